# hashchat

A small chat system over TCP. One server keeps a table of users in SQLite,
and any number of console clients connect to it to register, log in, see who
is online, send direct messages and pass files to each other.

Passwords never leave the client in plain text: the client sends the MD5 hex
digest of the password, and the server stores and compares only that digest.

## Installing

    pip install .

For running the tests:

    pip install ".[test]"
    pytest

## Running the server

    hashchat-server [--host HOST] [--port PORT] [--db PATH]

By default the server listens on `0.0.0.0`, port 3000, and keeps its users in
the SQLite file `hashchat.db` in the working directory. Each connection is
served by its own thread, and the server logs every message it sends and
receives. Stop it with Ctrl-C.

## Running a client

    hashchat-client [--host HOST] [--port PORT]

The client connects to `127.0.0.1`, port 3000 by default, prints the
server's greeting and asks for a command:

    0:register;1:log in;2:exit

Registration and login both take a line of the form `username#password`.
A successful registration also logs you in. A login allows three wrong
passwords before the client gives up; an unknown user name or a badly formed
line does not count against that.

Once you are in, the menu is:

    2:Query the online list;3:Chat;4:delete;5:logout;6:send file

- **2** shows how many users are online and their names.
- **3** asks whom to write to and what to say; enter `###` as the name to
  leave chat mode. A message to a user who is not online is answered with
  "The receiver is not online".
- **4** deletes your account after you confirm your password, and ends the
  session.
- **5** logs you out and ends the session.
- **6** sends a file to a user who is online. The server relays it, and the
  receiving client stores it as `recv_<file name>` in its download
  directory (the working directory unless `ChatClient.download_dir` is set).

## Using it from Python

- `hashchat.md5.MD5` is an incremental MD5 hash over bytes (`update`,
  `digest`, `hexdigest`); `hashchat.md5.md5_hex(text)` hashes a string
  (UTF-8) or bytes and returns the lowercase hex digest.
- `hashchat.userdb.UserStore(path=":memory:")` is the user table, usable as
  a context manager: `register`, `check_password`, `set_state`,
  `online_users`, `online_summary` (`"count#name1#name2"`), `delete`,
  `handle_of`, `name_of`, `exists` and `close`. `register` raises
  `UserExistsError` for a taken name and `check_password` raises
  `UnknownUserError` for an unknown one; both derive from `UserStoreError`.
- `hashchat.server.ChatServer(store, host="0.0.0.0", port=3000)` binds on
  construction; `server_address` gives the bound address,
  `serve_forever()` accepts clients and `shutdown()` stops it and closes
  open connections. `parse_credentials` splits `name#password`.
- `hashchat.client.ChatClient(host, port, input_func, output)` drives one
  session: `input_func()` returns the next typed line and `output(text)`
  receives each line to show (by default `input` and `print`). `run()`
  returns an exit status.
- `hashchat.client.hash_credentials` turns `name#password` into
  `(name, "name#<md5 of password>")`, `format_online` renders the server's
  online summary as display lines, and `parse_file_size` reads a decimal
  size.

Both `ChatServer` and `ChatClient` have a `delay` attribute that scales the
pauses kept between consecutive messages (0 disables them); `ChatClient`
also has `reply_timeout`, the time a command waits for the server's answer.

## What it does not do

Messages are sent as plain, unframed writes over an unencrypted connection;
the pauses between writes are what keep them apart. There is no message
history, no group chat and no offline delivery: a message or file for a user
who is not online is refused.