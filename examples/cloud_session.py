"""
One E2B session with cloud storage mounted, driven without the web server.

Reads the same settings as the server (see .env.example): set
SANDBOX_PROVIDER=e2b, E2B_API_KEY, and optionally CLOUD_STORAGE_ENABLED with
the R2 or Azure variables.

Setup:
    cp .env.example .env    # then fill in your keys
    pip install -e ..

Run:
    python cloud_session.py
"""

import asyncio

from sandterm import BrokerError, SessionManager, load_config, setup_logging
from sandterm.server import build_provider


async def main():
    config = load_config()
    setup_logging(level=config.log_level)
    finished = asyncio.Event()

    async def show(chunk: bytes) -> None:
        print(chunk.decode(errors="replace"), end="", flush=True)

    async def done(session_exit) -> None:
        finished.set()

    manager = SessionManager(build_provider(config), config)
    try:
        session = await manager.create(on_output=show, on_exit=done)
    except BrokerError as e:
        print(f"Could not start session: {e}")
        return

    await session.write("df -h /workspace/files 2>/dev/null || echo 'no storage'; ls -la\n")
    await session.write("exit\n")
    try:
        await asyncio.wait_for(finished.wait(), timeout=60)
    finally:
        await session.kill()


if __name__ == "__main__":
    asyncio.run(main())
