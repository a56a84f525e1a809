#!/usr/bin/env python3
"""
sockscope.py

Unix socket discovery + per-socket TCP exposure, with a plain-text directory port.

Key features:
- Walks the filesystem (default: /) for Unix domain sockets whose path matches a regex.
- Every newly found socket gets its own TCP listener; each TCP client is proxied
  byte-for-byte to the socket, both directions, with half-close propagation.
- Listener ports come from one shared, wrapping cursor starting at --start-port.
  Busy ports are skipped.
- The very first port serves the directory: "<ip>:<port> -> <socket>" lines
  (or "none yet") to any connecting client, then closes.
- Rescans every --scan-interval. Known sockets are never re-served and mappings
  are never removed.

Fatal:
- Directory port cannot be bound (port space exhausted).
- Scan root cannot be accessed.

Usage:
  python3 sockscope.py -v
  python3 sockscope.py --path-re 'docker|containerd' --start-port 40000
  python3 sockscope.py --config sockscope.conf

Query:
  nc 127.0.0.1 51111
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import re
import signal
import socket
import stat
import threading
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional, Set, Tuple


DEFAULT_PATH_RE = "ssh|docker|tmux|tmp"
DEFAULT_START_PORT = 51111
DEFAULT_TOP_DIR = "/"
DEFAULT_SCAN_INTERVAL = 5 * 60.0
DEFAULT_BIND_IP = "0.0.0.0"
DEFAULT_CHUNK_SIZE = 65536
LISTEN_BACKLOG = 128

# Pseudo-filesystems; plain string prefixes, so "/devices" is pruned too.
PRUNE_PREFIXES: Tuple[str, ...] = ("/proc", "/sys", "/dev")

PORT_SPACE = 65536
NONE_YET = "none yet\n"

ClientHandler = Callable[[asyncio.StreamReader, asyncio.StreamWriter], Awaitable[None]]


class NoPortsLeft(RuntimeError):
    """The shared port cursor wrapped around without a successful bind."""


class DiscoveryError(RuntimeError):
    """A filesystem scan failed as a whole (not just one entry)."""


# =============================================================================
# Small utilities
# =============================================================================

def get_path(d: Dict[str, Any], path: str, default: Any = None) -> Any:
    cur: Any = d
    for part in path.split("."):
        if not isinstance(cur, dict):
            return default
        if part not in cur:
            return default
        cur = cur[part]
    return cur


def parse_level(s: Any, default: int) -> int:
    if not s:
        return default
    name = str(s).strip().upper()
    return getattr(logging, name, default)


def clamp_int(v: Any, default: int, lo: int, hi: int) -> int:
    try:
        iv = int(v)
    except (TypeError, ValueError):
        return default
    if iv < lo:
        return lo
    if iv > hi:
        return hi
    return iv


_DURATION_UNITS = {"ns": 1e-9, "us": 1e-6, "µs": 1e-6, "ms": 1e-3, "s": 1.0, "m": 60.0, "h": 3600.0}
_DURATION_PART = r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)"
_DURATION_RE = re.compile(rf"(?:{_DURATION_PART})+")
_DURATION_PART_RE = re.compile(_DURATION_PART)


def parse_duration(v: Any) -> float:
    """
    Seconds from a plain number or a duration string like "5m", "90s", "1h30m", "250ms".
    Raises ValueError for anything else (including negative values).
    """
    if isinstance(v, (int, float)) and not isinstance(v, bool):
        secs = float(v)
    else:
        s = str(v).strip()
        try:
            secs = float(s)
        except ValueError:
            if not _DURATION_RE.fullmatch(s):
                raise ValueError(f"invalid duration {v!r}") from None
            secs = sum(float(n) * _DURATION_UNITS[u] for n, u in _DURATION_PART_RE.findall(s))
    if secs < 0:
        raise ValueError(f"negative duration {v!r}")
    return secs


def format_addr(addr: Any) -> str:
    """host:port for inet socknames ([host]:port for IPv6); str() for anything else."""
    if isinstance(addr, tuple) and len(addr) >= 2:
        host, port = addr[0], addr[1]
        if ":" in str(host):
            return f"[{host}]:{port}"
        return f"{host}:{port}"
    return str(addr) if addr else "?"


async def close_writer(writer: asyncio.StreamWriter, timeout: float = 0.25) -> None:
    try:
        writer.close()
    except RuntimeError:
        return
    try:
        await asyncio.wait_for(writer.wait_closed(), timeout=timeout)
    except (asyncio.TimeoutError, OSError):
        pass


def close_write(writer: asyncio.StreamWriter) -> None:
    """
    Signal end-of-stream on writer: half-close when the transport can write EOF,
    full close when it can't.
    """
    if writer.transport.is_closing():
        return
    if not writer.can_write_eof():
        writer.close()
        return
    try:
        writer.write_eof()
    except OSError:
        writer.close()


# =============================================================================
# "json-ish" loader (unquoted keys, comments, trailing commas)
# =============================================================================

_KEY_RE = re.compile(r'(?m)(^|\s|[{,])([A-Za-z_][A-Za-z0-9_-]*)(\s*):')
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_LINE_COMMENT_RE = re.compile(r"(?m)^\s*(//|#).*$")
_BLOCK_COMMENT_RE = re.compile(r"/\*.*?\*/", re.DOTALL)


def _jsonish_to_json(text: str) -> str:
    text = _BLOCK_COMMENT_RE.sub("", text)
    text = _LINE_COMMENT_RE.sub("", text)
    text = _KEY_RE.sub(lambda m: f'{m.group(1)}"{m.group(2)}"{m.group(3)}:', text)
    return _TRAILING_COMMA_RE.sub(r"\1", text)


def load_config(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        raw = f.read()
    try:
        cfg = json.loads(raw)
    except json.JSONDecodeError:
        norm = _jsonish_to_json(raw)
        try:
            cfg = json.loads(norm)
        except json.JSONDecodeError as e:
            raise SystemExit(f"Config parse error for {path}:\n{e}\n\nNormalized text:\n{norm}") from e
    if not isinstance(cfg, dict):
        raise SystemExit(f"Config {path} must hold an object at top level")
    return cfg


# =============================================================================
# Settings
# =============================================================================

@dataclass
class Settings:
    path_re: str = DEFAULT_PATH_RE
    start_port: int = DEFAULT_START_PORT
    top_dir: str = DEFAULT_TOP_DIR
    scan_interval: float = DEFAULT_SCAN_INTERVAL
    verbose: bool = False
    bind_ip: str = DEFAULT_BIND_IP
    prune_prefixes: Tuple[str, ...] = PRUNE_PREFIXES
    chunk_size: int = DEFAULT_CHUNK_SIZE
    pattern: re.Pattern = field(init=False, repr=False)

    def __post_init__(self) -> None:
        try:
            self.pattern = re.compile(self.path_re)
        except re.error as e:
            raise SystemExit(f"Invalid socket path regex {self.path_re!r}: {e}") from e
        if not 0 <= self.start_port < PORT_SPACE:
            raise SystemExit(f"Start port {self.start_port} outside 0-{PORT_SPACE - 1}")
        self.chunk_size = max(1, self.chunk_size)
        self.prune_prefixes = tuple(self.prune_prefixes)


def _pick(cli: Any, conf: Any, default: Any) -> Any:
    if cli is not None:
        return cli
    if conf is not None:
        return conf
    return default


def build_settings(args: argparse.Namespace, cfg: Dict[str, Any]) -> Settings:
    """Defaults, overridden by the config file, overridden by command-line flags."""
    disc = get_path(cfg, "discovery", {}) or {}
    lst = get_path(cfg, "listen", {}) or {}

    interval = _pick(args.scan_interval, disc.get("scan_interval"), DEFAULT_SCAN_INTERVAL)
    try:
        interval = parse_duration(interval)
    except ValueError as e:
        raise SystemExit(f"Bad scan interval: {e}") from e

    start_port = _pick(args.start_port, lst.get("start_port"), DEFAULT_START_PORT)
    try:
        start_port = int(start_port)
    except (TypeError, ValueError) as e:
        raise SystemExit(f"Bad start port {start_port!r}") from e

    prunes = disc.get("prune_prefixes")
    if not isinstance(prunes, list):
        prunes = list(PRUNE_PREFIXES)

    return Settings(
        path_re=str(_pick(args.path_re, disc.get("path_re"), DEFAULT_PATH_RE)),
        start_port=start_port,
        top_dir=str(_pick(args.top_dir, disc.get("top_dir"), DEFAULT_TOP_DIR)),
        scan_interval=interval,
        verbose=bool(args.verbose),
        bind_ip=str(_pick(args.bind_ip, lst.get("bind_ip"), DEFAULT_BIND_IP)),
        prune_prefixes=tuple(str(p) for p in prunes),
        chunk_size=clamp_int(get_path(cfg, "proxy.chunk_size", DEFAULT_CHUNK_SIZE), DEFAULT_CHUNK_SIZE, 1, 16 * 1024 * 1024),
    )


# =============================================================================
# Port allocation
# =============================================================================

class PortCursor:
    """
    Next candidate port, shared by every allocation. Each take() returns the
    current value and advances it by one, wrapping at 65536.
    """

    def __init__(self, start: int) -> None:
        self._next = start % PORT_SPACE
        self._lock = threading.Lock()

    def take(self) -> int:
        with self._lock:
            p = self._next
            self._next = (self._next + 1) % PORT_SPACE
            return p

    def peek(self) -> int:
        with self._lock:
            return self._next


class PortAllocator:
    """
    Binds a TCP listener on the next free port from the cursor.

    A value of 0 from the cursor means the space is exhausted (we've wrapped).
    That also means a cursor starting at 0 is exhausted from the outset.
    """

    def __init__(self, cursor: PortCursor, *, bind_ip: str, log: logging.Logger) -> None:
        self.cursor = cursor
        self.bind_ip = bind_ip
        self.log = log
        self.family = socket.AF_INET6 if ":" in bind_ip else socket.AF_INET

    def _bind(self, port: int) -> socket.socket:
        sock = socket.socket(self.family, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.bind_ip, port))
            sock.listen(LISTEN_BACKLOG)
            sock.setblocking(False)
        except OSError:
            sock.close()
            raise
        return sock

    def listen(self) -> socket.socket:
        """A bound, listening, non-blocking socket on the next free port."""
        port = self.cursor.take()
        while port != 0:
            try:
                return self._bind(port)
            except OSError as e:
                self.log.debug("cannot listen on %s: %s", format_addr((self.bind_ip, port)), e)
            port = self.cursor.take()
        raise NoPortsLeft("no more ports")


class Listener:
    """
    Accept loop over one listening socket. Each accepted connection is wrapped
    in streams and handed to handler in its own task.

    The loop ends at the first failed accept(); the listening socket is closed
    either way. Connections already accepted keep running.
    """

    def __init__(self, sock: socket.socket, handler: ClientHandler, *, log: logging.Logger) -> None:
        self.sock = sock
        self.handler = handler
        self.log = log
        self.address = format_addr(sock.getsockname())

        self._task: Optional[asyncio.Task] = None
        self._conn_tasks: Set[asyncio.Task] = set()
        self._writers: Set[asyncio.StreamWriter] = set()

    def start(self) -> asyncio.Task:
        self._task = asyncio.create_task(self._accept_loop(), name=f"accept:{self.address}")
        return self._task

    def done(self) -> bool:
        return self._task is not None and self._task.done()

    async def wait(self) -> None:
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def _accept_loop(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            while True:
                try:
                    conn, _ = await loop.sock_accept(self.sock)
                except OSError as e:
                    self.log.warning("error accepting connections on %s: %s", self.address, e)
                    break
                task = asyncio.create_task(self._serve(conn))
                self._conn_tasks.add(task)
                task.add_done_callback(self._conn_tasks.discard)
        finally:
            self.sock.close()

    async def _serve(self, conn: socket.socket) -> None:
        try:
            reader, writer = await asyncio.open_connection(sock=conn)
        except OSError as e:
            self.log.debug("[%s] unable to set up accepted connection: %s", self.address, e)
            conn.close()
            return
        self._writers.add(writer)
        try:
            await self.handler(reader, writer)
        finally:
            self._writers.discard(writer)

    async def close(self) -> None:
        if self._task is not None:
            self._task.cancel()
            await self.wait()
        else:
            self.sock.close()
        for w in list(self._writers):
            await close_writer(w)
        tasks = list(self._conn_tasks)
        for t in tasks:
            t.cancel()
        if tasks:
            try:
                await asyncio.wait_for(asyncio.gather(*tasks, return_exceptions=True), timeout=0.5)
            except asyncio.TimeoutError:
                self.log.debug("[%s] %d connection(s) still open at close", self.address, len(self._conn_tasks))


# =============================================================================
# Registry + directory listener
# =============================================================================

class Registry:
    """Append-only "<addr> -> <path>" lines, one per served socket."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._text = ""
        self._count = 0

    def add(self, address: str, path: str) -> str:
        line = f"{address} -> {path}\n"
        with self._lock:
            self._text += line
            self._count += 1
        return line

    def snapshot(self) -> str:
        with self._lock:
            return self._text

    def render(self) -> str:
        return self.snapshot() or NONE_YET

    def __len__(self) -> int:
        with self._lock:
            return self._count


class DirectoryListener:
    def __init__(self, *, allocator: PortAllocator, registry: Registry, log: logging.Logger) -> None:
        self.allocator = allocator
        self.registry = registry
        self.log = log
        self.address: Optional[str] = None
        self.listener: Optional[Listener] = None

    async def start(self) -> str:
        # NoPortsLeft propagates: without a directory there's nothing to run.
        self.listener = Listener(self.allocator.listen(), self._handle_client, log=self.log)
        self.address = self.listener.address
        self.listener.start()
        self.log.info("listening on %s for list queries", self.address)
        return self.address

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peer = format_addr(writer.get_extra_info("peername"))
        text = self.registry.render()
        try:
            writer.write(text.encode("utf-8", errors="surrogateescape"))
            await writer.drain()
        except OSError as e:
            self.log.debug("[%s] list query failed: %s", peer, e)
        finally:
            await close_writer(writer)
        self.log.debug("[%s] list query", peer)

    async def close(self) -> None:
        if self.listener is not None:
            await self.listener.close()


# =============================================================================
# Proxying
# =============================================================================

async def relay(
    src: asyncio.StreamReader,
    dst: asyncio.StreamWriter,
    *,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> Tuple[int, Optional[OSError]]:
    """
    Copy src to dst until EOF or error, then end dst's write side.
    Returns (bytes copied, error or None for a clean EOF).
    """
    n = 0
    err: Optional[OSError] = None
    try:
        while True:
            data = await src.read(chunk_size)
            if not data:
                break
            dst.write(data)
            await dst.drain()
            n += len(data)
    except OSError as e:
        err = e
    finally:
        close_write(dst)
    return n, err


async def proxy_connection(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
    path: str,
    *,
    log: logging.Logger,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> Tuple[int, int]:
    """
    Proxy one accepted TCP client to the Unix socket at path.
    Returns (bytes client->socket, bytes socket->client).
    """
    tag = f"{format_addr(writer.get_extra_info('peername'))} -> {path}"
    log.debug("[%s] connected", tag)

    try:
        s_reader, s_writer = await asyncio.open_unix_connection(path)
    except OSError as e:
        msg = f"[{tag}] Unable to connect to socket: {e}"
        log.debug("%s", msg)
        try:
            writer.write(msg.encode("utf-8", errors="surrogateescape"))
            await writer.drain()
        except OSError as we:
            log.debug("[%s] unable to report connect failure: %s", tag, we)
        finally:
            await close_writer(writer)
        return 0, 0

    (fwd, ferr), (back, berr) = await asyncio.gather(
        relay(reader, s_writer, chunk_size=chunk_size),
        relay(s_reader, writer, chunk_size=chunk_size),
    )
    if ferr is not None:
        log.debug("[%s] error sending data to socket: %s", tag, ferr)
    if berr is not None:
        log.debug("[%s] error sending data to client: %s", tag, berr)

    await close_writer(s_writer)
    await close_writer(writer)
    log.debug("[%s] done. %d bytes forward, %d bytes back", tag, fwd, back)
    return fwd, back


class ProxyServer:
    """
    One discovered socket: take a port, register the mapping, proxy every
    client until the listener goes away.
    """

    def __init__(
        self,
        path: str,
        *,
        allocator: PortAllocator,
        registry: Registry,
        log: logging.Logger,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ) -> None:
        self.path = path
        self.allocator = allocator
        self.registry = registry
        self.log = log
        self.chunk_size = chunk_size

        self.address: Optional[str] = None
        self.ready = asyncio.Event()
        self.connections = 0
        self.listener: Optional[Listener] = None

    async def run(self) -> None:
        """Returns once the listener is gone; the path is not served again."""
        try:
            sock = self.allocator.listen()
        except NoPortsLeft as e:
            self.log.warning("[%s] unable to make listener: %s", self.path, e)
            return

        self.listener = Listener(sock, self._handle_client, log=self.log)
        self.address = self.listener.address
        self.registry.add(self.address, self.path)
        self.listener.start()
        self.ready.set()
        self.log.info("listening on %s for connections to %s", self.address, self.path)

        await self.listener.wait()
        self.log.info("stopped serving %s on %s", self.path, self.address)

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.connections += 1
        await proxy_connection(reader, writer, self.path, log=self.log, chunk_size=self.chunk_size)

    async def close(self) -> None:
        if self.listener is not None:
            await self.listener.close()


# =============================================================================
# Discovery
# =============================================================================

class SocketDiscoverer:
    """
    Walks top_dir for sockets matching pattern. Each path is handed to
    on_found at most once for the life of the discoverer.

    scan() blocks and may run in a worker thread; on_found is called from
    whichever thread runs it.
    """

    def __init__(
        self,
        *,
        top_dir: str,
        pattern: re.Pattern,
        on_found: Callable[[str], None],
        log: logging.Logger,
        prune_prefixes: Tuple[str, ...] = PRUNE_PREFIXES,
    ) -> None:
        self.top_dir = top_dir
        self.pattern = pattern
        self.on_found = on_found
        self.log = log
        self.prune_prefixes = tuple(prune_prefixes)
        self.scans = 0

        self._seen: Set[str] = set()
        self._seen_lock = threading.Lock()
        self._stop = threading.Event()

    def stop(self) -> None:
        """Abandon any scan in progress (checked per directory) and end run()."""
        self._stop.set()

    def stopped(self) -> bool:
        return self._stop.is_set()

    def is_pruned(self, path: str) -> bool:
        return any(path.startswith(p) for p in self.prune_prefixes)

    def claim(self, path: str) -> bool:
        """Mark path seen. False if something already claimed it."""
        with self._seen_lock:
            if path in self._seen:
                return False
            self._seen.add(path)
            return True

    def seen(self) -> Set[str]:
        with self._seen_lock:
            return set(self._seen)

    def _matches(self, path: str, mode: int) -> bool:
        return stat.S_ISSOCK(mode) and self.pattern.search(path) is not None

    def _walk_error(self, err: OSError) -> None:
        self.log.debug("skipping %s: %s", err.filename, err)

    def iter_sockets(self) -> Iterator[str]:
        """Every matching socket under top_dir, seen or not. Symlinks are not followed."""
        try:
            st = os.lstat(self.top_dir)
        except OSError as e:
            raise DiscoveryError(f"cannot access {self.top_dir}: {e}") from e

        if not stat.S_ISDIR(st.st_mode):
            if self._matches(self.top_dir, st.st_mode):
                yield self.top_dir
            return
        if self.is_pruned(self.top_dir):
            return

        for dirpath, dirnames, filenames in os.walk(self.top_dir, onerror=self._walk_error):
            if self._stop.is_set():
                return
            dirnames[:] = sorted(d for d in dirnames if not self.is_pruned(os.path.join(dirpath, d)))
            for name in sorted(filenames):
                path = os.path.join(dirpath, name)
                try:
                    mode = os.lstat(path).st_mode
                except OSError:
                    continue
                if self._matches(path, mode):
                    yield path

    def scan(self) -> List[str]:
        """One full traversal. Returns the sockets dispatched by this pass."""
        found: List[str] = []
        for path in self.iter_sockets():
            if self._stop.is_set():
                break
            if not self.claim(path):
                continue
            found.append(path)
            self.on_found(path)
        self.scans += 1
        return found

    async def run(self, interval: float) -> None:
        while not self._stop.is_set():
            found = await asyncio.to_thread(self.scan)
            self.log.debug("scan %d of %s: %d new socket(s)", self.scans, self.top_dir, len(found))
            await asyncio.sleep(interval)


# =============================================================================
# Service
# =============================================================================

class Service:
    def __init__(self, settings: Settings, log: logging.Logger) -> None:
        self.settings = settings
        self.log = log

        self.cursor = PortCursor(settings.start_port)
        self.allocator = PortAllocator(self.cursor, bind_ip=settings.bind_ip, log=log)
        self.registry = Registry()
        self.directory = DirectoryListener(allocator=self.allocator, registry=self.registry, log=log)
        self.discoverer = SocketDiscoverer(
            top_dir=settings.top_dir,
            pattern=settings.pattern,
            on_found=self._on_found,
            log=log,
            prune_prefixes=settings.prune_prefixes,
        )

        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.proxies: Dict[str, ProxyServer] = {}
        self.stopping = False
        self._tasks: Set[asyncio.Task] = set()

    async def start(self) -> str:
        """Bring up the directory listener; returns its address."""
        self.loop = asyncio.get_running_loop()
        return await self.directory.start()

    def _on_found(self, path: str) -> None:
        # Walker thread -> loop
        if self.loop is None:
            raise RuntimeError("service not started")
        if self.stopping:
            return
        self.loop.call_soon_threadsafe(self.spawn, path)

    def spawn(self, path: str) -> Optional[asyncio.Task]:
        if self.stopping:
            self.log.debug("not serving %s: shutting down", path)
            return None
        ps = ProxyServer(
            path,
            allocator=self.allocator,
            registry=self.registry,
            log=self.log,
            chunk_size=self.settings.chunk_size,
        )
        self.proxies[path] = ps
        task = asyncio.create_task(ps.run(), name=f"proxy:{path}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def scan_once(self) -> List[str]:
        return await asyncio.to_thread(self.discoverer.scan)

    async def run(self) -> None:
        await self.discoverer.run(self.settings.scan_interval)

    async def stop(self) -> None:
        self.stopping = True
        self.discoverer.stop()
        await self.directory.close()
        for ps in list(self.proxies.values()):
            await ps.close()

        tasks = list(self._tasks)
        for t in tasks:
            t.cancel()
        if tasks:
            try:
                await asyncio.wait_for(asyncio.gather(*tasks, return_exceptions=True), timeout=0.5)
            except asyncio.TimeoutError:
                self.log.debug("%d proxy task(s) still running at shutdown", len(self._tasks))


# =============================================================================
# Logging setup
# =============================================================================

def setup_logging(cfg: Dict[str, Any], *, verbose: bool = False) -> logging.Logger:
    log = logging.getLogger("sockscope")
    log.propagate = False
    log.handlers.clear()
    log.setLevel(logging.DEBUG)  # handlers gate output

    lc = get_path(cfg, "logging", {}) or {}
    console_cfg = lc.get("console", {}) or {}
    file_cfg = lc.get("file", {}) or {}

    if verbose:
        console_level = logging.DEBUG
    else:
        console_level = parse_level(console_cfg.get("verbosity"), logging.WARNING)

    ch = logging.StreamHandler()
    ch.setLevel(console_level)
    ch.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
    log.addHandler(ch)

    if bool(file_cfg.get("enabled", False)):
        path = str(file_cfg.get("path", "sockscope.log"))
        fh = logging.FileHandler(path, encoding="utf-8")
        fh.setLevel(parse_level(file_cfg.get("verbosity"), logging.INFO))
        fh.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
        log.addHandler(fh)

    return log


# =============================================================================
# CLI + entrypoint
# =============================================================================

USAGE = """\
Finds unix sockets matching a regex and for each found socket, listens on a TCP
port and forwards connections to the Unix socket.  Every so often the
filesystem is scanned for new sockets.

The first port will send a list of port -> socket mappings to any connecting
client.
"""


def build_argparser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="sockscope",
        description=USAGE,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    p.add_argument("--path-re", default=None, metavar="REGEX",
                   help=f"Socket paths must match the regex to be served (default: {DEFAULT_PATH_RE})")
    p.add_argument("--start-port", type=int, default=None, metavar="PORT",
                   help=f"Starting port to use for socket service (default: {DEFAULT_START_PORT})")
    p.add_argument("--top-dir", default=None, metavar="DIR",
                   help=f"Topmost directory in which to search for sockets (default: {DEFAULT_TOP_DIR})")
    p.add_argument("--scan-interval", type=parse_duration, default=None, metavar="WAIT",
                   help="Time to wait between scans for new sockets, e.g. 30s, 5m (default: 5m)")
    p.add_argument("--bind-ip", default=None, metavar="IP",
                   help=f"Address to listen on (default: {DEFAULT_BIND_IP})")
    p.add_argument("--config", default=None, help="Path to JSON (or json-ish) config file")
    p.add_argument("-v", "--verbose", action="store_true", help="Verbose logging")
    return p


async def amain(args: argparse.Namespace) -> int:
    cfg = load_config(args.config) if args.config else {}
    settings = build_settings(args, cfg)
    log = setup_logging(cfg, verbose=settings.verbose)

    svc = Service(settings, log)
    try:
        await svc.start()
    except NoPortsLeft as e:
        log.error("unable to listen for list queries: %s", e)
        return 1

    stop_ev = asyncio.Event()

    def _stop(*_a) -> None:
        stop_ev.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _stop)
        except NotImplementedError:
            pass

    scan = asyncio.create_task(svc.run(), name="scan")
    stopper = asyncio.create_task(stop_ev.wait(), name="stop")
    rc = 0
    try:
        await asyncio.wait({scan, stopper}, return_when=asyncio.FIRST_COMPLETED)
        if scan.done():
            scan.result()
    except DiscoveryError as e:
        log.error("error walking file tree: %s", e)
        rc = 1
    finally:
        scan.cancel()
        stopper.cancel()
        await svc.stop()

    return rc


def main() -> None:
    args = build_argparser().parse_args()
    try:
        rc = asyncio.run(amain(args))
    except KeyboardInterrupt:
        rc = 130
    raise SystemExit(rc)


if __name__ == "__main__":
    main()
