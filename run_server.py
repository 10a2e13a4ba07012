# run_server.py
import socket

import uvicorn

from torrentstream.config import settings
from torrentstream.main import app


def _is_port_available(host: str, port: int) -> bool:
    """Check if a TCP port is available for binding on the given host."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            s.bind((host, port))
        return True
    except OSError:
        return False


def main() -> None:
    host, port = settings.HOST, settings.PORT
    if not _is_port_available(host, port):
        raise SystemExit(f"Port {port} on {host} is already in use; set PORT to another value")

    print(f"Starting {settings.APP_NAME} on {host}:{port}")
    print(f"External access: {'enabled' if host == '0.0.0.0' else 'disabled'}")
    print(f"HTTP mode - Access via: http://{host}:{port}")
    # single process: sessions live in memory
    uvicorn.run(
        app,
        host=host,
        port=port,
        log_level=settings.LOG_LEVEL.lower(),
        proxy_headers=True,
        forwarded_allow_ips="*",
        timeout_keep_alive=20,
    )


if __name__ == "__main__":
    main()
