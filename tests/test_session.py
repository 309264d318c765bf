"""Tests for SessionManager — lifecycle, ordering, idle timeout, teardown."""

import asyncio

import pytest

from sandterm.config import BrokerConfig, R2Storage
from sandterm.errors import ConfigurationError, CreationError, MountError
from sandterm.sandbox.base import ExecutionResult, PtySize
from sandterm.session import (
    ExitReason,
    SessionExit,
    SessionManager,
    SessionState,
    build_init_script,
)


R2 = R2Storage(
    access_key_id="AK",
    secret_access_key="SK",
    endpoint="https://acct.r2.cloudflarestorage.com",
    bucket="dev-files",
)


class Sink:
    """Records what the session delivers, in order."""

    def __init__(self):
        self.events = []

    async def output(self, chunk: bytes) -> None:
        self.events.append(("output", chunk))

    async def exit(self, session_exit: SessionExit) -> None:
        self.events.append(("exit", session_exit))

    @property
    def outputs(self):
        return [e[1] for e in self.events if e[0] == "output"]

    @property
    def exits(self):
        return [e[1] for e in self.events if e[0] == "exit"]


@pytest.fixture
def sink():
    return Sink()


def make_manager(provider, **overrides):
    overrides.setdefault("idle_timeout", 5)
    return SessionManager(provider, BrokerConfig(**overrides), connection_id="conn-test")


class TestCreate:

    async def test_create_starts_terminal(self, provider, sink):
        manager = make_manager(provider)
        handle = await manager.create(sink.output, sink.exit)

        assert manager.state == SessionState.READY
        assert handle.sandbox_id == "fake-1"
        _, size, env, cwd = provider.calls[-1]
        assert size == PtySize(cols=80, rows=24)
        assert env["TERM"] == "xterm-256color"
        assert cwd == "/home/user"
        await handle.kill()

    async def test_init_script_without_storage(self, provider, sink):
        manager = make_manager(provider)
        handle = await manager.create(sink.output, sink.exit)

        script = provider.files["/home/user/.bashrc"]
        assert "cd ~" in script
        assert "Welcome to Cloud Dev Environment" in script
        assert "Cloud storage disabled" in script
        assert provider.index("write_file") < provider.index("create_pty")
        await handle.kill()

    async def test_attaches_to_configured_sandbox(self, provider, sink):
        manager = make_manager(provider, sandbox_id="sbx-existing")
        handle = await manager.create(sink.output, sink.exit)
        assert provider.calls[0] == ("create_or_attach", "sbx-existing", False)
        assert handle.sandbox_id == "sbx-existing"
        await handle.kill()

    async def test_session_env_exported(self, provider, sink):
        manager = make_manager(provider, session_env={"ANTHROPIC_API_KEY": "sk-test"})
        handle = await manager.create(sink.output, sink.exit)

        assert "export ANTHROPIC_API_KEY=sk-test" in provider.files["/home/user/.bashrc"]
        _, _, env, _ = provider.calls[provider.index("create_pty")]
        assert env["ANTHROPIC_API_KEY"] == "sk-test"
        await handle.kill()

    async def test_single_use(self, provider, sink):
        manager = make_manager(provider)
        handle = await manager.create(sink.output, sink.exit)
        with pytest.raises(CreationError):
            await manager.create(sink.output, sink.exit)
        await handle.kill()

    async def test_provision_failure(self, provider, sink):
        provider.fail["create_or_attach"] = RuntimeError("quota exceeded")
        manager = make_manager(provider)

        with pytest.raises(CreationError, match="quota exceeded"):
            await manager.create(sink.output, sink.exit)
        assert manager.state == SessionState.DESTROYED
        assert provider.count("destroy") == 0

    async def test_pty_failure_cleans_up(self, provider, sink):
        provider.fail["create_pty"] = RuntimeError("no pty available")
        manager = make_manager(provider)

        with pytest.raises(CreationError, match="no pty available"):
            await manager.create(sink.output, sink.exit)
        assert manager.state == SessionState.DESTROYED
        assert provider.count("destroy") == 1
        assert sink.exits == []


class TestStorage:

    async def test_mounts_before_terminal(self, provider, sink):
        manager = make_manager(provider, storage=R2, storage_enabled=True)
        handle = await manager.create(sink.output, sink.exit)

        assert provider.calls[0] == ("create_or_attach", None, True)
        assert provider.index("run_command", "mountpoint") < provider.index("create_pty")
        _, _, _, cwd = provider.calls[provider.index("create_pty")]
        assert cwd == "/workspace/files"
        script = provider.files["/home/user/.bashrc"]
        assert "cd /workspace/files" in script
        assert "Cloudflare R2 storage mounted at /workspace/files" in script
        assert manager.mounts.state.mounted
        await handle.kill()

    async def test_unmount_before_destroy(self, provider, sink):
        manager = make_manager(provider, storage=R2, storage_enabled=True)
        handle = await manager.create(sink.output, sink.exit)
        await handle.kill()

        unmounted = provider.index("run_command", "fusermount -u")
        assert provider.index("kill_pty") < unmounted < provider.index("destroy")
        assert not manager.mounts.state.mounted

    async def test_unmount_failure_does_not_block_teardown(self, provider, sink):
        manager = make_manager(provider, storage=R2, storage_enabled=True)
        handle = await manager.create(sink.output, sink.exit)
        provider.command_errors["fusermount"] = ConnectionError("sandbox unreachable")

        await handle.kill()
        assert provider.count("destroy") == 1
        assert manager.state == SessionState.DESTROYED

    async def test_mount_failure_aborts_creation(self, provider, sink):
        provider.command_results["sudo s3fs"] = ExecutionResult(
            stdout="", stderr="fuse: device not found", returncode=1
        )
        manager = make_manager(provider, storage=R2, storage_enabled=True)

        with pytest.raises(MountError, match="fuse: device not found"):
            await manager.create(sink.output, sink.exit)
        assert provider.count("create_pty") == 0
        assert provider.count("destroy") == 1

    async def test_incomplete_storage(self, provider, sink):
        manager = make_manager(provider, storage=R2Storage(bucket="b"), storage_enabled=True)
        with pytest.raises(ConfigurationError):
            await manager.create(sink.output, sink.exit)
        assert provider.count("run_command") == 0
        assert provider.count("destroy") == 1


class TestIO:

    async def test_output_in_order(self, provider, sink, wait_until):
        manager = make_manager(provider)
        handle = await manager.create(sink.output, sink.exit)

        for chunk in (b"one ", b"two ", b"three"):
            provider.last_pty.emit(chunk)
        await wait_until(lambda: len(sink.outputs) == 3)
        assert sink.outputs == [b"one ", b"two ", b"three"]
        await handle.kill()

    async def test_write(self, provider, sink):
        manager = make_manager(provider)
        handle = await manager.create(sink.output, sink.exit)

        await handle.write("echo hi\n")
        assert provider.last_pty.sent == [b"echo hi\n"]
        await handle.kill()

    async def test_write_lone_surrogate(self, provider, sink):
        manager = make_manager(provider)
        handle = await manager.create(sink.output, sink.exit)

        await handle.write("a\ud800b")
        assert provider.last_pty.sent == [b"a?b"]
        assert manager.is_live
        await handle.kill()

    async def test_write_before_create_ignored(self, provider):
        manager = make_manager(provider)
        await manager.write("ls\n")
        await manager.resize(100, 40)
        assert provider.calls == []

    async def test_write_after_kill_ignored(self, provider, sink):
        manager = make_manager(provider)
        handle = await manager.create(sink.output, sink.exit)
        await handle.kill()

        await handle.write("ls\n")
        await handle.resize(100, 40)
        assert provider.count("send_input") == 0
        assert provider.count("resize_pty") == 0

    async def test_resize(self, provider, sink):
        manager = make_manager(provider)
        handle = await manager.create(sink.output, sink.exit)

        await handle.resize(100, 40)
        assert ("resize_pty", PtySize(cols=100, rows=40)) in provider.calls
        await handle.kill()

    async def test_resize_failure_keeps_session(self, provider, sink):
        provider.fail["resize_pty"] = OSError("bad ioctl")
        manager = make_manager(provider)
        handle = await manager.create(sink.output, sink.exit)

        await handle.resize(100, 40)
        assert manager.state == SessionState.READY
        await handle.kill()

    async def test_write_failure_ends_session(self, provider, sink, wait_until):
        provider.fail["send_input"] = ConnectionError("stream closed")
        manager = make_manager(provider)
        handle = await manager.create(sink.output, sink.exit)

        await handle.write("ls\n")
        await wait_until(lambda: manager.state == SessionState.DESTROYED)
        assert sink.exits[0].reason == ExitReason.ERROR
        assert sink.exits[0].detail == "stream closed"


class TestExit:

    async def test_process_exit(self, provider, sink, wait_until):
        manager = make_manager(provider)
        await manager.create(sink.output, sink.exit)

        provider.last_pty.exit(0)
        await wait_until(lambda: manager.state == SessionState.DESTROYED)
        assert sink.exits == [SessionExit(code=0, reason=ExitReason.PROCESS_EXIT)]
        assert provider.count("destroy") == 1

    async def test_output_delivered_before_exit(self, provider, sink, wait_until):
        manager = make_manager(provider)
        await manager.create(sink.output, sink.exit)

        pty = provider.last_pty
        for i in range(20):
            pty.emit(f"line {i}\n".encode())
        pty.exit(3)
        await wait_until(lambda: sink.exits)

        assert len(sink.outputs) == 20
        assert sink.events[-1] == ("exit", SessionExit(code=3, reason=ExitReason.PROCESS_EXIT))

    async def test_watcher_failure(self, provider, sink, wait_until):
        manager = make_manager(provider)
        await manager.create(sink.output, sink.exit)

        provider.last_pty.fail(ConnectionError("stream reset"))
        await wait_until(lambda: manager.state == SessionState.DESTROYED)
        assert sink.exits[0].reason == ExitReason.ERROR
        assert sink.exits[0].code == 1
        assert provider.count("destroy") == 1

    async def test_kill_does_not_notify(self, provider, sink):
        manager = make_manager(provider)
        handle = await manager.create(sink.output, sink.exit)
        await handle.kill()
        await asyncio.sleep(0.05)
        assert sink.exits == []


class TestIdleTimeout:

    async def test_timeout_tears_down(self, provider, sink, wait_until):
        manager = make_manager(provider, idle_timeout=0.05)
        await manager.create(sink.output, sink.exit)

        await wait_until(lambda: manager.state == SessionState.DESTROYED)
        assert sink.exits == [SessionExit(code=None, reason=ExitReason.TIMEOUT)]
        assert provider.count("kill_pty") == 1
        assert provider.count("destroy") == 1

    async def test_input_extends_deadline(self, provider, sink, wait_until):
        manager = make_manager(provider, idle_timeout=0.3)
        handle = await manager.create(sink.output, sink.exit)

        for _ in range(4):
            await asyncio.sleep(0.15)
            await handle.write("x")
        assert manager.state == SessionState.READY
        assert sink.exits == []

        await wait_until(lambda: manager.state == SessionState.DESTROYED)
        assert sink.exits[0].reason == ExitReason.TIMEOUT

    async def test_output_does_not_extend_deadline(self, provider, sink, wait_until):
        manager = make_manager(provider, idle_timeout=0.1)
        await manager.create(sink.output, sink.exit)

        for _ in range(5):
            provider.last_pty.emit(b"tick\n")
            await asyncio.sleep(0.03)
        await wait_until(lambda: manager.state == SessionState.DESTROYED)
        assert sink.exits[0].reason == ExitReason.TIMEOUT

    async def test_single_notification(self, provider, sink, wait_until):
        manager = make_manager(provider, idle_timeout=0.05)
        await manager.create(sink.output, sink.exit)

        await wait_until(lambda: manager.state == SessionState.DESTROYED)
        await asyncio.sleep(0.05)
        # killing the pty resolved its exit too; only the timeout is reported
        assert len(sink.exits) == 1


class TestTeardown:

    async def test_concurrent_kill_once(self, provider, sink):
        manager = make_manager(provider)
        handle = await manager.create(sink.output, sink.exit)

        await asyncio.gather(*(handle.kill() for _ in range(5)))
        assert provider.count("kill_pty") == 1
        assert provider.count("destroy") == 1
        assert manager.state == SessionState.DESTROYED

    async def test_kill_during_exit(self, provider, sink, wait_until):
        manager = make_manager(provider)
        handle = await manager.create(sink.output, sink.exit)

        provider.last_pty.exit(0)
        await handle.kill()
        await wait_until(lambda: manager.state == SessionState.DESTROYED)
        assert provider.count("destroy") == 1

    async def test_kill_during_create(self, provider, sink):
        provider.create_gate = asyncio.Event()
        manager = make_manager(provider)

        creating = asyncio.create_task(manager.create(sink.output, sink.exit))
        await asyncio.sleep(0.01)
        assert manager.state == SessionState.CREATING

        killing = asyncio.create_task(manager.kill())
        await asyncio.sleep(0.01)
        provider.create_gate.set()

        with pytest.raises(CreationError):
            await creating
        await killing
        assert manager.state == SessionState.DESTROYED
        assert provider.count("create_pty") == 0
        assert provider.count("destroy") == 1

    async def test_kill_before_create(self, provider, sink):
        manager = make_manager(provider)
        await manager.kill()
        assert manager.state == SessionState.DESTROYED
        assert provider.calls == []

    async def test_teardown_errors_swallowed(self, provider, sink):
        manager = make_manager(provider)
        handle = await manager.create(sink.output, sink.exit)
        provider.fail["kill_pty"] = OSError("already gone")
        provider.fail["destroy"] = ConnectionError("api down")

        await handle.kill()
        assert manager.state == SessionState.DESTROYED
        assert manager.sandbox_id is None


class TestInitScript:

    def test_quotes_values(self):
        script = build_init_script({"TOKEN": "a b'c"}, None, ["Hi"], "no storage")
        assert "export TOKEN='a b'\"'\"'c'" in script

    def test_workdir(self):
        script = build_init_script({}, "/workspace/files", [], "mounted")
        lines = script.splitlines()
        assert "cd /workspace/files" in lines
        assert lines.index("cd /workspace/files") < lines.index("clear")
        assert lines[-1] == 'echo ""'

    def test_rejects_bad_names(self):
        with pytest.raises(ConfigurationError):
            build_init_script({"BAD-NAME": "x"}, None, [], "")
