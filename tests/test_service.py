"""End-to-end tests: directory + discovery + proxying through Service and amain."""

import asyncio
import logging
import threading

import pytest

from conftest import make_socket_file, port_of, query, unix_server
from sockscope import NONE_YET, NoPortsLeft, PortAllocator, Service, Settings, amain, build_argparser

PATTERN = r"/(docker|tmux)[^/]*$"


class ExhaustedAllocator(PortAllocator):
    def listen(self):
        raise NoPortsLeft("no more ports")


@pytest.fixture
def settings(tmp_path, start_port):
    return Settings(
        path_re=PATTERN,
        start_port=start_port,
        top_dir=str(tmp_path),
        scan_interval=0.05,
        bind_ip="0.0.0.0",
        prune_prefixes=(str(tmp_path / "proc"),),
    )


async def _ready(svc, path):
    await asyncio.wait_for(svc.proxies[path].ready.wait(), timeout=5)
    return svc.proxies[path]


class TestService:
    @pytest.mark.asyncio
    async def test_discover_register_and_proxy(self, tmp_path, settings, log):
        svc = Service(settings, log)
        directory = await svc.start()
        try:
            assert await query(port_of(directory)) == NONE_YET.encode()

            async with unix_server(tmp_path / "docker.sock") as path:
                assert await svc.scan_once() == [path]
                ps = await _ready(svc, path)

                body = await query(port_of(directory))
                assert f"0.0.0.0:{port_of(ps.address)} -> {path}\n".encode() in body

                reader, writer = await asyncio.open_connection("127.0.0.1", port_of(ps.address))
                writer.write(b"ping")
                writer.write_eof()
                assert await asyncio.wait_for(reader.read(), timeout=5) == b"ping"
                writer.close()

                # Later cycles don't re-serve or re-register.
                assert await svc.scan_once() == []
                assert await query(port_of(directory)) == body
                assert len(svc.registry) == 1
        finally:
            await svc.stop()

    @pytest.mark.asyncio
    async def test_mapping_outlives_its_socket(self, tmp_path, settings, log):
        svc = Service(settings, log)
        directory = await svc.start()
        try:
            path = make_socket_file(tmp_path / "tmux-gone")
            await svc.scan_once()
            ps = await _ready(svc, path)
            line = f"0.0.0.0:{port_of(ps.address)} -> {path}\n".encode()

            (tmp_path / "tmux-gone").unlink()
            await svc.scan_once()
            assert line in await query(port_of(directory))
        finally:
            await svc.stop()

    @pytest.mark.asyncio
    async def test_pruned_socket_is_never_served(self, tmp_path, settings, log):
        (tmp_path / "proc").mkdir()
        hidden = make_socket_file(tmp_path / "proc" / "docker.sock")
        visible = make_socket_file(tmp_path / "docker.sock")

        svc = Service(settings, log)
        directory = await svc.start()
        try:
            assert await svc.scan_once() == [visible]
            await _ready(svc, visible)
            assert hidden not in svc.proxies
            assert hidden.encode() not in await query(port_of(directory))
        finally:
            await svc.stop()

    @pytest.mark.asyncio
    async def test_exhaustion_leaves_traversal_intact(self, tmp_path, settings, log):
        for name in ("docker-a", "docker-b", "tmux-c"):
            make_socket_file(tmp_path / name)

        svc = Service(settings, log)
        await svc.start()
        # Directory is up; from here on nothing can bind.
        svc.allocator = ExhaustedAllocator(svc.cursor, bind_ip="0.0.0.0", log=log)
        try:
            found = await svc.scan_once()
            assert [p.rsplit("/", 1)[1] for p in found] == ["docker-a", "docker-b", "tmux-c"]

            await asyncio.sleep(0.1)
            assert len(svc.registry) == 0
            assert all(ps.address is None for ps in svc.proxies.values())
        finally:
            await svc.stop()

    @pytest.mark.asyncio
    async def test_run_loop_rescans(self, tmp_path, settings, log):
        svc = Service(settings, log)
        await svc.start()
        loop_task = asyncio.create_task(svc.run())
        try:
            path = make_socket_file(tmp_path / "docker-late")
            for _ in range(100):
                if path in svc.proxies:
                    break
                await asyncio.sleep(0.05)
            await _ready(svc, path)
            assert svc.discoverer.scans >= 1
        finally:
            loop_task.cancel()
            await asyncio.gather(loop_task, return_exceptions=True)
            await svc.stop()


    @pytest.mark.asyncio
    async def test_stop_during_scan_spawns_nothing(self, tmp_path, settings, log):
        first = make_socket_file(tmp_path / "docker-a")
        make_socket_file(tmp_path / "docker-b")

        svc = Service(settings, log)
        await svc.start()
        reached = threading.Event()
        release = threading.Event()
        forward = svc.discoverer.on_found

        def gated(path):
            reached.set()
            release.wait(5)
            forward(path)

        svc.discoverer.on_found = gated
        scan = asyncio.create_task(svc.scan_once())
        try:
            assert await asyncio.to_thread(reached.wait, 5)
            await svc.stop()
        finally:
            release.set()

        found = await asyncio.wait_for(scan, timeout=5)
        # The walk halts at the next entry; the one in flight is dropped.
        assert found == [first]
        await asyncio.sleep(0.05)
        assert svc.proxies == {}
        assert len(svc.registry) == 0

    @pytest.mark.asyncio
    async def test_spawn_after_stop_is_a_noop(self, tmp_path, settings, log):
        svc = Service(settings, log)
        await svc.start()
        await svc.stop()
        assert svc.spawn(make_socket_file(tmp_path / "docker.sock")) is None
        assert svc.proxies == {}

    def test_found_before_start_is_an_error(self, tmp_path, settings, log):
        svc = Service(settings, log)
        with pytest.raises(RuntimeError, match="service not started"):
            svc._on_found(str(tmp_path / "docker.sock"))


class TestAmain:
    @pytest.fixture(autouse=True)
    def _restore_logger(self):
        yield
        logging.getLogger("sockscope").handlers.clear()

    @pytest.mark.asyncio
    async def test_missing_scan_root_exits_nonzero(self, tmp_path, start_port):
        args = build_argparser().parse_args([
            "--top-dir", str(tmp_path / "absent"),
            "--start-port", str(start_port),
            "--bind-ip", "127.0.0.1",
        ])
        assert await asyncio.wait_for(amain(args), timeout=10) == 1

    @pytest.mark.asyncio
    async def test_no_directory_port_exits_nonzero(self, tmp_path):
        args = build_argparser().parse_args([
            "--top-dir", str(tmp_path),
            "--start-port", "0",
            "--bind-ip", "127.0.0.1",
        ])
        assert await asyncio.wait_for(amain(args), timeout=10) == 1
