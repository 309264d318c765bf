"""
Simplest possible sandterm example — one shell session on this machine.

No cloud account needed: the sandbox is a temporary directory and the
terminal is a local bash.

Run:
    python local_terminal.py
"""

import asyncio

from sandterm import BrokerConfig, LocalProvider, SessionManager


async def main():
    finished = asyncio.Event()

    async def show(chunk: bytes) -> None:
        print(chunk.decode(errors="replace"), end="", flush=True)

    async def done(session_exit) -> None:
        print(f"\n[session ended: {session_exit.reason.value}, code={session_exit.code}]")
        finished.set()

    manager = SessionManager(LocalProvider(), BrokerConfig(idle_timeout=60))
    session = await manager.create(on_output=show, on_exit=done)
    print(f"Sandbox: {session.sandbox_id}")

    await session.write("echo \"hello from $(pwd)\"\n")
    await session.write("exit 0\n")

    try:
        await asyncio.wait_for(finished.wait(), timeout=10)
    finally:
        await session.kill()


if __name__ == "__main__":
    asyncio.run(main())
