"""Multi-client chat server: accounts, online list, direct messages and file relay."""

from __future__ import annotations

import argparse
import logging
import socket
import threading
import time

from hashchat.userdb import UnknownUserError, UserExistsError, UserStore

log = logging.getLogger(__name__)

MAX_DATA_SIZE = 1024
DEFAULT_PORT = 3000
BACKLOG = 5

WELCOME = "welcome!"
FILE_MARKER = "\n##FFI"
END_CHAT = "###"


class _SessionEnd(Exception):
    """The client went away or the session is over."""


def parse_credentials(text: str) -> tuple[str, str]:
    """Split 'name#password' into its two parts; raise ValueError if malformed."""
    if "#" not in text:
        raise ValueError(f"missing '#' in credentials: {text!r}")
    tokens = [token for token in text.split("#") if token]
    if len(tokens) < 2:
        raise ValueError(f"incomplete credentials: {text!r}")
    return tokens[0], tokens[1]


def _parse_size(text: str) -> int:
    return int(text) if text.isdigit() else -1


class ChatServer:
    """Accepts clients and runs one session thread per connection.

    The wire protocol has no framing: each message is a single write, and
    the server pauses between writes so that messages are not merged.
    ``delay`` scales those pauses (0 disables them).
    """

    delay = 1.0

    def __init__(self, store: UserStore, host: str = "0.0.0.0", port: int = DEFAULT_PORT) -> None:
        self.store = store
        self._connections: dict[int, socket.socket] = {}
        self._lock = threading.Lock()
        self._stopping = threading.Event()
        self._listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._listener.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
        try:
            self._listener.bind((host, port))
            self._listener.listen(BACKLOG)
        except OSError:
            self._listener.close()
            raise
        self._listener.settimeout(0.5)

    @property
    def server_address(self) -> tuple[str, int]:
        """The (host, port) the server listens on."""
        return self._listener.getsockname()

    def serve_forever(self) -> None:
        """Accept clients until shutdown() is called."""
        while not self._stopping.is_set():
            try:
                conn, _ = self._listener.accept()
            except socket.timeout:
                continue
            except OSError:
                if self._stopping.is_set():
                    break
                log.warning("accept error")
                continue
            threading.Thread(target=self.handle_client, args=(conn,), daemon=True).start()

    def shutdown(self) -> None:
        """Stop accepting clients and close every open connection."""
        self._stopping.set()
        self._listener.close()
        with self._lock:
            connections = list(self._connections.values())
        for conn in connections:
            try:
                conn.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass

    def handle_client(self, conn: socket.socket) -> None:
        """Run one client's session from greeting to disconnect."""
        handle = conn.fileno()
        with self._lock:
            self._connections[handle] = conn
        try:
            self._session(conn, handle)
        except (_SessionEnd, OSError):
            pass
        finally:
            with self._lock:
                if self._connections.get(handle) is conn:
                    del self._connections[handle]
            conn.close()

    # -- plumbing -----------------------------------------------------------

    def _pause(self, seconds: float) -> None:
        if self.delay > 0:
            time.sleep(seconds * self.delay)

    def _connection(self, handle: int) -> socket.socket | None:
        with self._lock:
            return self._connections.get(handle)

    @staticmethod
    def _send(conn: socket.socket, text: str) -> None:
        conn.sendall(text.encode("utf-8"))
        log.info("send response to client:%s", text)

    @staticmethod
    def _recv(conn: socket.socket) -> str:
        data = conn.recv(MAX_DATA_SIZE)
        if not data:
            raise _SessionEnd
        text = data.decode("utf-8", errors="replace")
        log.info("recv message from client:%s", text)
        return text

    # -- session ------------------------------------------------------------

    def _session(self, conn: socket.socket, handle: int) -> None:
        self._send(conn, WELCOME)
        self._pause(2)
        command = self._recv(conn)
        if command == "0":
            self._register(conn, handle)
        elif command == "1":
            self._login(conn, handle)
        elif command == "2":
            self._send(conn, "You have exit successfully!")
            return
        else:
            self._send(conn, "Input error")
            return
        self._command_loop(conn, handle)

    def _register(self, conn: socket.socket, handle: int) -> None:
        text = self._recv(conn)
        if "#" not in text:
            self._send(conn, "Wrong:The format is wrong!")
            self._pause(1)
            raise _SessionEnd
        name = next((token for token in text.split("#") if token), "")
        if self.store.exists(name):
            self._send(conn, "Wrong:The user name is already registered")
            self._pause(1)
            raise _SessionEnd
        try:
            name, password_hash = parse_credentials(text)
        except ValueError:
            self._send(conn, "Wrong:The format is wrong!")
            self._pause(1)
            raise _SessionEnd from None
        try:
            self.store.register(name, password_hash)
        except UserExistsError:
            log.error("register error!")
            return
        self._send(conn, "You have registered successfully!")
        self.store.set_state(name, True, handle)

    def _login(self, conn: socket.socket, handle: int) -> None:
        failures = 0
        while True:
            text = self._recv(conn)
            try:
                name, password_hash = parse_credentials(text)
                known = self.store.exists(name)
            except ValueError:
                known = False
            if not known:
                self._send(conn, "w_input")
                continue
            failures += 1
            if self.store.check_password(name, password_hash):
                self._send(conn, "right")
                self.store.set_state(name, True, handle)
                self._pause(1)
                self._send(conn, "You have login successfully!")
                return
            self._send(conn, "wrong")
            if failures == 3:
                raise _SessionEnd

    def _command_loop(self, conn: socket.socket, handle: int) -> None:
        while True:
            command = self._recv(conn)
            if command == "2":
                self._send(conn, self.store.online_summary())
                self._pause(1)
            elif command == "3":
                self._chat(conn, handle)
            elif command == "4":
                self._delete(conn)
            elif command == "5":
                name = self._recv(conn)
                self.store.set_state(name, False, 0)
                self._send(conn, "You have logout successfully!")
                raise _SessionEnd
            elif command == "6":
                self._relay_file(conn, handle)

    def _chat(self, conn: socket.socket, handle: int) -> None:
        while True:
            target_name = self._recv(conn)
            if target_name == END_CHAT:
                return
            target_handle = self.store.handle_of(target_name)
            message = self._recv(conn)
            target = self._connection(target_handle) if target_handle else None
            if target is None:
                self._send(conn, "The receiver is not online")
                continue
            sender = self.store.name_of(handle) or ""
            try:
                self._send(target, f"recv message from {sender} :{message}")
            except OSError:
                self._send(conn, "The receiver is not online")
                continue
            self._send(conn, "The msg has already been sent")

    def _delete(self, conn: socket.socket) -> None:
        text = self._recv(conn)
        try:
            name, password_hash = parse_credentials(text)
            allowed = self.store.check_password(name, password_hash)
        except (ValueError, UnknownUserError):
            allowed = False
        if allowed and self.store.delete(name):
            self._send(conn, "You have deleted successfully!")
            raise _SessionEnd
        self._send(conn, "Delete failed!")

    def _relay_file(self, conn: socket.socket, handle: int) -> None:
        target_name = self._recv(conn)
        target_handle = self.store.handle_of(target_name)
        target = self._connection(target_handle) if target_handle else None
        if target is None:
            self._send(conn, "The receiver is not online")
            return
        self._send(conn, "ON")
        sender = self.store.name_of(handle) or ""
        self._send(target, FILE_MARKER)
        self._pause(2)
        self._send(target, sender)

        file_name = self._recv(conn)
        self._send(target, file_name)
        size_text = self._recv(conn)
        self._send(target, size_text)
        size = _parse_size(size_text)
        self._pause(1)

        written = 0
        while True:
            chunk = conn.recv(MAX_DATA_SIZE)
            if chunk:
                target.sendall(chunk)
            written += len(chunk)
            if not chunk or written == size:
                log.info("[recv-%s] receive file done", file_name)
                return


def main(argv: list[str] | None = None) -> int:
    """Run the chat server from the command line."""
    parser = argparse.ArgumentParser(prog="hashchat-server", description="Run the chat server.")
    parser.add_argument("--host", default="0.0.0.0", help="address to listen on")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help="port to listen on")
    parser.add_argument("--db", default="hashchat.db", help="path of the user database")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(message)s")
    with UserStore(args.db) as store:
        try:
            server = ChatServer(store, args.host, args.port)
        except OSError as exc:
            log.error("bind error: %s", exc)
            return 1
        try:
            server.serve_forever()
        except KeyboardInterrupt:
            pass
        finally:
            server.shutdown()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())