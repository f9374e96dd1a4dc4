import os
import sys
import threading
import time
import webbrowser
from pathlib import Path

import uvicorn

from linkdeck.config import get_data_file, get_host, get_port, get_log_level

PACKAGE_DIR = Path(__file__).resolve().parent / "linkdeck"

WATCH_FILES = [
    PACKAGE_DIR / "main.py",
    PACKAGE_DIR / "storage.py",
    PACKAGE_DIR / "models.py",
    PACKAGE_DIR / "health.py",
    PACKAGE_DIR / "executor.py",
    PACKAGE_DIR / "deadline.py",
]


def run_uvicorn():
    """
    Run the FastAPI app via uvicorn in this process
    (called in a background thread).
    """
    config = uvicorn.Config(
        "linkdeck.main:app",
        host=get_host(),
        port=get_port(),
        log_level=get_log_level().lower(),
        reload=False,  # we are doing our own watch/restart
    )
    server = uvicorn.Server(config)
    server.run()


def open_browser_once():
    url = f"http://{get_host()}:{get_port()}/api/health"
    print(f"[server] Opening {url}")
    try:
        webbrowser.open(url)
    except webbrowser.Error as e:
        print(f"[server] Could not open a browser: {e}")


def main():
    print(f"[server] Data file: {get_data_file()}")

    # start uvicorn in a separate thread
    t = threading.Thread(target=run_uvicorn, daemon=True)
    t.start()

    if os.environ.get("LINKDECK_OPEN_BROWSER"):
        # give it a moment to boot before opening browser
        time.sleep(1.0)
        open_browser_once()

    mtimes = {p: p.stat().st_mtime for p in WATCH_FILES if p.exists()}

    print("[server] Watching for changes. Press Ctrl+C to quit.")

    try:
        while t.is_alive():
            time.sleep(1.0)
            for p in WATCH_FILES:
                if not p.exists():
                    continue
                new_mtime = p.stat().st_mtime
                old_mtime = mtimes.get(p)
                if old_mtime is None:
                    mtimes[p] = new_mtime
                    continue
                if new_mtime != old_mtime:
                    print(f"\n[server] Detected change in {p.name}")
                    mtimes[p] = new_mtime
                    if not sys.stdin.isatty():
                        print("[server] Not interactive, keeping the running code.")
                        continue
                    ans = input(
                        "Apply changes and restart server? [y/N]: "
                    ).strip().lower()
                    if ans == "y":
                        print("[server] Restarting with new code...")
                        os.execv(sys.executable, [sys.executable] + sys.argv)
                    else:
                        print("[server] Ignoring change. Continuing...")
        print("[server] Server thread exited.")
    except KeyboardInterrupt:
        print("\n[server] Shutting down.")


if __name__ == "__main__":
    main()
