import socket
import threading
import time

import pytest

from hashchat.md5 import md5_hex
from hashchat.server import ChatServer, parse_credentials
from hashchat.userdb import UserStore


class _Reader:
    def __init__(self, sock):
        self.sock = sock
        self.buffer = b""

    def take(self, length):
        """Return the next ``length`` bytes received, decoded as text."""
        while len(self.buffer) < length:
            chunk = self.sock.recv(4096)
            if not chunk:
                break
            self.buffer += chunk
        got, self.buffer = self.buffer[:length], self.buffer[length:]
        return got.decode("utf-8")

    def take_like(self, text):
        return self.take(len(text.encode("utf-8")))

    def expect(self, text):
        assert self.take_like(text) == text

    def at_eof(self):
        if self.buffer:
            return False
        return self.sock.recv(1024) == b""


def _send(sock, text):
    sock.sendall(text.encode("utf-8"))
    time.sleep(0.1)


@pytest.fixture
def store():
    user_store = UserStore()
    yield user_store


@pytest.fixture
def server(store):
    chat_server = ChatServer(store, "127.0.0.1", 0)
    chat_server.delay = 0
    yield chat_server
    chat_server.shutdown()


def _session(server):
    server_side, client_side = socket.socketpair()
    client_side.settimeout(5)
    thread = threading.Thread(target=server.handle_client, args=(server_side,), daemon=True)
    thread.start()
    reader = _Reader(client_side)
    reader.expect("welcome!")
    return client_side, reader, thread


def _register(server, name):
    sock, reader, thread = _session(server)
    _send(sock, "0")
    _send(sock, f"{name}#{md5_hex('password')}")
    reader.expect("You have registered successfully!")
    return sock, reader, thread


def test_parse_credentials_splits_name_and_hash():
    assert parse_credentials("alice#abc123") == ("alice", "abc123")


@pytest.mark.parametrize("text", ["alice", "alice#", "#", ""])
def test_parse_credentials_rejects_malformed(text):
    with pytest.raises(ValueError):
        parse_credentials(text)


def test_exit_command(server):
    sock, reader, thread = _session(server)
    _send(sock, "2")
    reader.expect("You have exit successfully!")
    assert reader.at_eof()
    thread.join(5)


def test_unknown_first_command(server):
    sock, reader, thread = _session(server)
    _send(sock, "9")
    reader.expect("Input error")
    assert reader.at_eof()


def test_register_and_online_list(server, store):
    sock, reader, _ = _register(server, "alice")
    _send(sock, "2")
    reader.expect("1#alice")
    assert store.exists("alice")
    assert store.check_password("alice", md5_hex("password"))
    assert store.handle_of("alice") > 0


def test_register_format_error(server, store):
    sock, reader, _ = _session(server)
    _send(sock, "0")
    _send(sock, "alice")
    reader.expect("Wrong:The format is wrong!")
    assert reader.at_eof()
    assert not store.exists("alice")


def test_register_duplicate_name(server, store):
    store.register("alice", md5_hex("password"))
    sock, reader, _ = _session(server)
    _send(sock, "0")
    _send(sock, "alice#other")
    reader.expect("Wrong:The user name is already registered")
    assert reader.at_eof()
    assert store.check_password("alice", md5_hex("password"))


def test_login_success(server, store):
    password_hash = md5_hex("password")
    store.register("alice", password_hash)
    sock, reader, _ = _session(server)
    _send(sock, "1")
    _send(sock, f"alice#{password_hash}")
    reader.expect("right")
    reader.expect("You have login successfully!")
    assert store.online_users() == ["alice"]


def test_login_unknown_user_does_not_count(server, store):
    password_hash = md5_hex("password")
    store.register("alice", password_hash)
    sock, reader, _ = _session(server)
    _send(sock, "1")
    replies = []
    for _ in range(4):
        _send(sock, f"bob#{password_hash}")
        replies.append(reader.take_like("w_input"))
    assert replies == ["w_input"] * 4
    assert store.online_users() == []
    _send(sock, f"alice#{password_hash}")
    assert reader.take_like("right") == "right"
    assert reader.take_like("You have login successfully!") == "You have login successfully!"
    assert store.online_users() == ["alice"]


def test_login_three_wrong_passwords_ends_session(server, store):
    store.register("alice", md5_hex("password"))
    sock, reader, thread = _session(server)
    _send(sock, "1")
    for _ in range(3):
        _send(sock, "alice#badhash")
        reader.expect("wrong")
    assert reader.at_eof()
    thread.join(5)
    assert store.online_users() == []


def test_chat_between_two_users(server, store):
    alice, alice_reader, _ = _register(server, "alice")
    bob, bob_reader, _ = _register(server, "bob")
    _send(bob, "2")
    bob_reader.expect(store.online_summary())

    _send(alice, "3")
    _send(alice, "bob")
    _send(alice, "hello")
    bob_reader.expect("recv message from alice :hello")
    alice_reader.expect("The msg has already been sent")

    _send(alice, "carol")
    _send(alice, "anyone?")
    alice_reader.expect("The receiver is not online")

    _send(alice, "###")
    _send(alice, "2")
    alice_reader.expect(store.online_summary())
    assert store.online_users() == ["alice", "bob"]


def test_delete_account(server, store):
    sock, reader, thread = _register(server, "alice")
    _send(sock, "4")
    _send(sock, "alice#badhash")
    reader.expect("Delete failed!")
    assert store.exists("alice")

    _send(sock, "4")
    _send(sock, f"alice#{md5_hex('password')}")
    reader.expect("You have deleted successfully!")
    assert reader.at_eof()
    thread.join(5)
    assert not store.exists("alice")


def test_logout(server, store):
    sock, reader, thread = _register(server, "alice")
    _send(sock, "5")
    _send(sock, "alice")
    reader.expect("You have logout successfully!")
    assert reader.at_eof()
    thread.join(5)
    assert store.online_users() == []
    assert store.handle_of("alice") == 0


def test_file_relay(server, store):
    alice, alice_reader, _ = _register(server, "alice")
    bob, bob_reader, _ = _register(server, "bob")
    _send(bob, "2")
    assert bob_reader.take_like("2#alice#bob") == "2#alice#bob"

    _send(alice, "6")
    _send(alice, "bob")
    assert alice_reader.take_like("ON") == "ON"
    assert bob_reader.take_like("\n##FFI") == "\n##FFI"
    assert bob_reader.take_like("alice") == "alice"
    _send(alice, "a.txt")
    assert bob_reader.take_like("a.txt") == "a.txt"
    _send(alice, "5")
    assert bob_reader.take_like("5") == "5"
    _send(alice, "hello")
    assert bob_reader.take_like("hello") == "hello"

    _send(alice, "2")
    assert alice_reader.take_like("2#alice#bob") == "2#alice#bob"
    assert store.online_users() == ["alice", "bob"]


def test_file_relay_to_offline_user(server, store):
    alice, alice_reader, _ = _register(server, "alice")
    _send(alice, "6")
    _send(alice, "bob")
    reply = alice_reader.take_like("The receiver is not online")
    assert reply == "The receiver is not online"
    assert store.online_users() == ["alice"]


def test_serve_forever_over_tcp(store):
    chat_server = ChatServer(store, "127.0.0.1", 0)
    chat_server.delay = 0
    thread = threading.Thread(target=chat_server.serve_forever, daemon=True)
    thread.start()
    try:
        with socket.create_connection(chat_server.server_address, timeout=5) as sock:
            reader = _Reader(sock)
            reader.expect("welcome!")
            _send(sock, "2")
            reader.expect("You have exit successfully!")
            assert reader.at_eof()
    finally:
        chat_server.shutdown()
    thread.join(5)
    assert not thread.is_alive()