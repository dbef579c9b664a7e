import uvicorn
import argparse
import logging
import os
import threading
import time


def _parent_watcher():
    """
    Best-effort guard: if the parent process dies (e.g., desktop shell crash/force-quit),
    exit the backend to avoid orphaned sidecars and port collisions.
    """
    ppid = os.getppid()
    while True:
        try:
            # On Unix, kill(pid, 0) checks existence. If parent becomes init (ppid == 1), exit.
            if ppid == 1:
                os._exit(0)
            os.kill(ppid, 0)
        except OSError:
            os._exit(0)
        time.sleep(3)

if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Personal Hub Vault Runner")
    parser.add_argument("--host", type=str, default="127.0.0.1", help="Host interface to bind")
    parser.add_argument("--port", type=int, default=8344, help="Port to run the backend on")
    parser.add_argument("--dir", type=str, default="./vault-data", help="Vault data directory")
    parser.add_argument("--storage", choices=["filesystem", "memory"], default="filesystem", help="Storage backend")
    parser.add_argument("--log-level", type=str, default=os.getenv("HUBVAULT_LOG_LEVEL", "INFO"), help="Logging level")

    args = parser.parse_args()

    # Set environment vars for the vault to pick up at import time
    os.environ["HUBVAULT_DATA_DIR"] = args.dir
    os.environ["HUBVAULT_STORAGE"] = args.storage
    os.environ["HUBVAULT_LOG_LEVEL"] = args.log_level.upper()

    from hubvault import config

    logging.basicConfig(
        level=config.log_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Import after the environment is set; this also tells PyInstaller to bundle the app.
    from hubvault.main import app

    threading.Thread(target=_parent_watcher, daemon=True).start()

    print(f"🔐 Starting Personal Hub Vault on http://{args.host}:{args.port}")
    print(f"📂 Data: {os.path.abspath(args.dir)}")

    # Frozen binaries cannot hot-reload
    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        reload=False,
    )
