"""Interactive chat client: accounts, online list, direct messages and file transfer."""

from __future__ import annotations

import argparse
import queue
import socket
import threading
import time
from functools import partial
from pathlib import Path
from typing import Callable

from hashchat.md5 import md5_hex

MAX_DATA_SIZE = 1024
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 3000
MAX_LOGIN_ATTEMPTS = 3

FILE_MARKER = "\n##FFI"
END_CHAT = "###"

START_MENU = "0:register;1:log in;2:exit"
MAIN_MENU = "2:Query the online list;3:Chat;4:delete;5:logout;6:send file"
CREDENTIALS_PROMPT = "please input your 'username#password'"

LOGIN_OK = "right"
RETRY_INPUT = "w_input"
FILE_TARGET_ONLINE = "ON"
DELETE_OK = "You have deleted successfully!"
LOGOUT_OK = "You have logout successfully!"


class _Exit(Exception):
    """The session is over and the client should stop with this code."""

    def __init__(self, code: int) -> None:
        super().__init__(code)
        self.code = code


def parse_file_size(text: str) -> int:
    """Parse a decimal file size sent over the wire; raise ValueError otherwise."""
    stripped = text.strip()
    if not (stripped.isascii() and stripped.isdigit()):
        raise ValueError(f"not a file size: {text!r}")
    return int(stripped)


def format_online(summary: str) -> list[str]:
    """Turn a 'count#name1#name2' summary into display lines."""
    tokens = [token for token in summary.split("#") if token]
    if not tokens:
        return []
    count, *names = tokens
    return [f"There are {count} people online", *(f"{name} is online" for name in names)]


def hash_credentials(line: str) -> tuple[str, str]:
    """Split 'name#password' and return (name, 'name#<md5 of password>')."""
    tokens = [token for token in line.split("#") if token]
    if len(tokens) < 2:
        raise ValueError("credentials must look like 'username#password'")
    name, secret = tokens[0], tokens[1]
    return name, f"{name}#{md5_hex(secret)}"


class ChatClient:
    """Drives one session against a chat server from scripted or typed input.

    ``delay`` scales the pauses that keep consecutive messages apart on the
    unframed stream; ``reply_timeout`` bounds how long a command waits for
    the server's answer.
    """

    delay = 1.0
    reply_timeout = 5.0

    def __init__(
        self,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        input_func: Callable[[], str] = input,
        output: Callable[[str], object] = print,
    ) -> None:
        self.host = host
        self.port = port
        self.download_dir = Path(".")
        self.name: str | None = None
        self._input = input_func
        self._output = output
        self._output_lock = threading.Lock()
        self._sock: socket.socket | None = None
        self._replies: queue.Queue[str] = queue.Queue()
        self._receiver: threading.Thread | None = None

    def run(self) -> int:
        """Connect, run the session, and return an exit status."""
        with socket.create_connection((self.host, self.port)) as sock:
            self._sock = sock
            try:
                self._show(f"recv message from server:{self._recv()}")
                self._start_menu()
                self._show(f"USER NAME: {self.name}")
                self._receiver = threading.Thread(target=self._receive_loop, daemon=True)
                self._receiver.start()
                self._pause(2)
                self._main_menu()
            except _Exit as exc:
                return exc.code
            except EOFError:
                return 0
            except ConnectionError:
                self._show("connection closed by server")
                return 1
            finally:
                self._stop_receiver()
        return 0

    # -- plumbing -----------------------------------------------------------

    def _show(self, text: str) -> None:
        with self._output_lock:
            self._output(text)

    def _ask(self) -> str:
        return self._input()

    def _pause(self, seconds: float) -> None:
        if self.delay > 0:
            time.sleep(seconds * self.delay)

    def _send(self, text: str) -> None:
        self._sock.sendall(text.encode("utf-8"))
        self._show(f"send message to server:{text}")

    def _recv(self) -> str:
        data = self._sock.recv(MAX_DATA_SIZE)
        if not data:
            raise ConnectionError("connection closed by server")
        return data.decode("utf-8", errors="replace")

    def _drain(self) -> None:
        while True:
            try:
                self._replies.get_nowait()
            except queue.Empty:
                return

    def _await_reply(self) -> str:
        try:
            return self._replies.get(timeout=self.reply_timeout)
        except queue.Empty:
            return ""

    def _stop_receiver(self) -> None:
        if self._sock is not None:
            try:
                self._sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
        if self._receiver is not None:
            self._receiver.join(timeout=1.0)

    # -- before login -------------------------------------------------------

    def _start_menu(self) -> None:
        self._show("Please input your command:")
        self._show(START_MENU)
        command = self._ask()
        self._send(command)
        if command == "0":
            self._register()
        elif command == "1":
            self._login()
        elif command == "2":
            self._pause(2)
            raise _Exit(0)
        else:
            self._pause(1)
            self._show(f"recv message from server:{self._recv()}")
            raise _Exit(1)

    def _register(self) -> None:
        self._show(CREDENTIALS_PROMPT)
        try:
            name, payload = hash_credentials(self._ask())
        except ValueError as exc:
            self._show(str(exc))
            raise _Exit(1) from None
        self._send(payload)
        reply = self._recv()
        self._show(f"recv message from server:{reply}")
        if reply.startswith("Wrong"):
            self._pause(1)
            raise _Exit(1)
        self.name = name

    def _login(self) -> None:
        failures = 0
        while failures < MAX_LOGIN_ATTEMPTS:
            self._show(CREDENTIALS_PROMPT)
            try:
                name, payload = hash_credentials(self._ask())
            except ValueError as exc:
                self._show(str(exc))
                continue
            self._send(payload)
            reply = self._recv()
            if reply == LOGIN_OK:
                self.name = name
                return
            if reply != RETRY_INPUT:
                failures += 1
        self._show("Too many failed attempts, exiting")
        raise _Exit(1)

    # -- after login --------------------------------------------------------

    def _main_menu(self) -> None:
        handlers = {
            "2": self._query_online,
            "3": self._chat,
            "4": self._delete,
            "5": self._logout,
            "6": self._send_file,
        }
        while True:
            self._show("")
            self._show("Please input your command:")
            self._show(MAIN_MENU)
            command = self._ask()
            self._drain()
            self._send(command)
            handler = handlers.get(command)
            if handler is None:
                self._show("Invalid inputs")
            else:
                handler()

    def _query_online(self) -> None:
        for line in format_online(self._await_reply()):
            self._show(line)

    def _chat(self) -> None:
        while True:
            self._show(f"Who do you want to chat with or quit chatting(input'{END_CHAT}')?")
            target = self._ask()
            self._send(target)
            if target == END_CHAT:
                return
            self._show("your msg:")
            self._send(self._ask())
            self._pause(1)

    def _delete(self) -> None:
        self._show("please input your 'password'")
        typed = self._ask()
        self._send(f"{self.name}#{md5_hex(typed)}")
        if self._await_reply() == DELETE_OK:
            raise _Exit(0)

    def _logout(self) -> None:
        self._pause(1)
        self._send(self.name or "")
        if self._await_reply() == LOGOUT_OK:
            self._pause(3)
            raise _Exit(0)

    def _send_file(self) -> None:
        self._show("Who do you want to send file to ?")
        self._send(self._ask())
        self._pause(2)
        if self._await_reply() != FILE_TARGET_ONLINE:
            self._show("The receiver is not online.")
            return
        self._show("Please enter file path: ")
        path = Path(self._ask())
        try:
            size = path.stat().st_size
            handle = path.open("rb")
        except OSError:
            self._show(f"open [{path}] failed")
            raise _Exit(1) from None
        with handle:
            self._send(path.name)
            self._pause(1)
            self._send(str(size))
            self._pause(1)
            for chunk in iter(partial(handle.read, MAX_DATA_SIZE), b""):
                self._sock.sendall(chunk)
        self._show(f"send file[{path.name}] succeed!!!!")

    # -- background receiver ------------------------------------------------

    def _receive_loop(self) -> None:
        while True:
            try:
                text = self._recv()
            except OSError:
                return
            self._show(f"recv message from server:{text}")
            if text.startswith(FILE_MARKER):
                try:
                    self._receive_file(text[len(FILE_MARKER):])
                except ValueError as exc:
                    self._show(str(exc))
                except OSError:
                    return
                continue
            self._replies.put(text)

    def _receive_file(self, sender: str) -> None:
        sender = sender or self._recv()
        self._show(f"recv file from:{sender}")
        file_name = self._recv()
        self._show(f"recv filename from server:{file_name}")
        size_text = self._recv()
        self._show(f"recv filesize from server:{size_text}")
        size = parse_file_size(size_text)

        self.download_dir.mkdir(parents=True, exist_ok=True)
        target = self.download_dir / f"recv_{Path(file_name).name}"
        written = 0
        with target.open("wb") as out:
            while written < size:
                chunk = self._sock.recv(min(MAX_DATA_SIZE, size - written))
                if not chunk:
                    break
                out.write(chunk)
                written += len(chunk)
        self._show(f"[recv-{target.name}] receive file done")
        self._show("file over")
        self._show(MAIN_MENU)


def main(argv: list[str] | None = None) -> int:
    """Run the interactive chat client from the command line."""
    parser = argparse.ArgumentParser(prog="hashchat-client", description="Chat client.")
    parser.add_argument("--host", default=DEFAULT_HOST, help="server address")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help="server port")
    args = parser.parse_args(argv)

    client = ChatClient(args.host, args.port)
    try:
        return client.run()
    except OSError as exc:
        print(f"connect error: {exc}")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())