import contextlib
import socket


def is_port_available(host: str, port: int):
    with contextlib.closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as s:
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            s.bind((host, port))
        except OverflowError:
            return False
        except OSError as exc:
            if 'Address already in use' in str(exc):
                return False
            raise

    return True
