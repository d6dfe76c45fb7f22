from __future__ import annotations

import hashlib
import socket
import threading
import time

import pytest

from mapilink.connection import ConnectionState, MapiConnection, SessionConfig
from mapilink.errors import (
    LoginError,
    MapiError,
    RedirectError,
    TooManyRedirectsError,
    TransportError,
    UnsupportedRedirectError,
)
from mapilink.protocol import LineType
from mapilink.server import StubServer
from mapilink.transport import BlockReader, BlockWriter

CHALLENGE = "s4lt:mserver:8:SHA1,MD5,plain:LIT"


def expected_response(user="monetdb", password="secret", database=""):
    digest = hashlib.sha1((password + "s4lt").encode()).hexdigest()
    return f"BIG:{user}:{{SHA1}}{digest}:sql:{database}:"


def redirect_to(srv, path="demo"):
    return f"mapi:monetdb://{srv.host}:{srv.port}/{path}"


def test_login():
    with StubServer(CHALLENGE) as srv, MapiConnection() as conn:
        assert conn.connect(srv.host, srv.port, "monetdb", "secret") is None
        assert conn.state is ConnectionState.LOGGED_IN
        assert srv.responses == [expected_response()]
        assert conn.sock.getsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY) != 0
        assert conn.reader is not None and conn.writer is not None
        assert conn.input_stream is not None and conn.output_stream is not None


def test_login_with_database():
    with StubServer(CHALLENGE) as srv, MapiConnection(SessionConfig(database="demo")) as conn:
        conn.connect(srv.host, srv.port, "monetdb", "secret")
        assert srv.responses == [expected_response(database="demo")]


def test_login_warnings():
    with StubServer(CHALLENGE, ["#hello", "#world"]) as srv, MapiConnection() as conn:
        assert conn.connect(srv.host, srv.port, "monetdb", "secret") == "hello\nworld"


def test_conversation_after_login():
    with StubServer(CHALLENGE) as srv, MapiConnection() as conn:
        conn.connect(srv.host, srv.port, "monetdb", "secret")
        conn.writer.write_line("sselect 1;")
        assert conn.reader.readline() == "#sselect 1;"
        assert conn.reader.line_type == LineType.INFO
        conn.reader.readline()
        assert conn.reader.line_type == LineType.PROMPT


def test_login_error_closes_connection():
    replies = ["!InvalidCredentialsException:checkCredentials:invalid credentials for user 'monetdb'"]
    with StubServer(CHALLENGE, replies) as srv, MapiConnection() as conn:
        with pytest.raises(LoginError, match="invalid credentials"):
            conn.connect(srv.host, srv.port, "monetdb", "wrong")
        assert conn.state is ConnectionState.FAILED
        assert conn.sock is None
        assert conn.reader is None


def test_error_wins_over_redirect():
    with StubServer(CHALLENGE, ["#note"]) as other:
        replies = ["^" + redirect_to(other), "!go away"]
        with StubServer(CHALLENGE, replies) as srv, MapiConnection() as conn:
            with pytest.raises(LoginError, match="go away"):
                conn.connect(srv.host, srv.port, "monetdb", "secret")
        assert other.connections == 0


def test_follow_redirect():
    with StubServer(CHALLENGE, ["#on the other side"]) as target:
        target_uri = redirect_to(target)
        with StubServer(CHALLENGE, ["^" + target_uri]) as srv, MapiConnection() as conn:
            warnings = conn.connect(srv.host, srv.port, "monetdb", "secret")
            assert warnings == (
                f"Redirect by {srv.host}:{srv.port} to {target_uri}\n"
                "on the other side"
            )
            assert conn.port == target.port
            assert conn.state is ConnectionState.LOGGED_IN
        assert srv.connections == 1
        assert target.connections == 1
        assert target.responses == [expected_response()]


def test_only_first_redirect_is_tried():
    with StubServer(CHALLENGE) as first, StubServer(CHALLENGE) as second:
        replies = ["^" + redirect_to(first), "^" + redirect_to(second)]
        with StubServer(CHALLENGE, replies) as srv, MapiConnection() as conn:
            conn.connect(srv.host, srv.port, "monetdb", "secret")
            assert conn.port == first.port
        assert second.connections == 0


def test_redirect_not_followed():
    with StubServer(CHALLENGE) as target:
        uris = [redirect_to(target, "a"), redirect_to(target, "b")]
        config = SessionConfig(follow_redirects=False)
        with StubServer(CHALLENGE, ["^" + u for u in uris]) as srv, MapiConnection(config) as conn:
            with pytest.raises(RedirectError) as excinfo:
                conn.connect(srv.host, srv.port, "monetdb", "secret")
            assert excinfo.value.redirects == uris
            for uri in uris:
                assert f"[{uri}]" in str(excinfo.value)
            assert conn.sock is None
        assert target.connections == 0


def test_redirect_budget_exhausted():
    with StubServer(CHALLENGE) as target:
        config = SessionConfig(max_redirects=1)
        with StubServer(CHALLENGE, ["^" + redirect_to(target)]) as srv, MapiConnection(config) as conn:
            with pytest.raises(TooManyRedirectsError, match="1"):
                conn.connect(srv.host, srv.port, "monetdb", "secret")
            assert conn.state is ConnectionState.FAILED
        assert srv.connections == 1
        assert target.connections == 0


def test_redirect_budget_counts_first_attempt():
    with StubServer(CHALLENGE) as target:
        config = SessionConfig(max_redirects=2)
        with StubServer(CHALLENGE, ["^" + redirect_to(target)]) as srv, MapiConnection(config) as conn:
            assert conn.connect(srv.host, srv.port, "monetdb", "secret").startswith("Redirect by")
        assert target.connections == 1


def test_zero_budget_never_connects():
    with StubServer(CHALLENGE) as srv, MapiConnection(SessionConfig(max_redirects=0)) as conn:
        with pytest.raises(TooManyRedirectsError):
            conn.connect(srv.host, srv.port, "monetdb", "secret")
    assert srv.connections == 0


def test_unsupported_redirect():
    with StubServer(CHALLENGE, ["^monetdb://elsewhere/demo"]) as srv, MapiConnection() as conn:
        with pytest.raises(UnsupportedRedirectError, match="monetdb://elsewhere/demo"):
            conn.connect(srv.host, srv.port, "monetdb", "secret")
        assert conn.sock is None


class HangupServer(StubServer):
    def handle(self, conn):
        reader = BlockReader(conn.makefile("rb"))
        writer = BlockWriter(conn.makefile("wb"))
        writer.write(self.challenge.encode() + b"\n")
        writer.flush()
        reader.read()
        reader.close()
        writer.close()


def test_server_hangs_up_during_login():
    with HangupServer(CHALLENGE) as srv, MapiConnection() as conn:
        with pytest.raises(TransportError, match="Connection to server lost"):
            conn.connect(srv.host, srv.port, "monetdb", "secret")
        assert conn.state is ConnectionState.FAILED
        assert conn.sock is None


def test_bad_challenge_closes_connection():
    with StubServer("s4lt:mserver:9:SHA1:LIT") as srv, MapiConnection() as conn:
        with pytest.raises(MapiError, match="Unsupported protocol version"):
            conn.connect(srv.host, srv.port, "monetdb", "secret")
        assert conn.sock is None


def test_connect_twice_is_refused():
    with StubServer(CHALLENGE) as srv, MapiConnection() as conn:
        conn.connect(srv.host, srv.port, "monetdb", "secret")
        with pytest.raises(MapiError, match="logged in"):
            conn.connect(srv.host, srv.port, "monetdb", "secret")
        assert srv.connections == 1


def test_close_is_idempotent():
    conn = MapiConnection()
    conn.close()
    conn.close()
    assert conn.state is ConnectionState.DISCONNECTED

    with StubServer(CHALLENGE) as srv:
        conn.connect(srv.host, srv.port, "monetdb", "secret")
        conn.close()
        conn.close()
    assert conn.sock is None
    assert conn.state is ConnectionState.DISCONNECTED


def test_wiretap(tmp_path):
    path = tmp_path / "wire.log"
    with StubServer(CHALLENGE, ["#hi"]) as srv, MapiConnection() as conn:
        conn.enable_wiretap(str(path))
        conn.connect(srv.host, srv.port, "monetdb", "secret")
    assert conn.tap is None

    text = path.read_text(encoding="utf-8")
    assert "RX " in text and CHALLENGE in text
    assert "TX " in text and expected_response() in text
    assert "TD " in text and "write final block" in text
    assert "RD " in text and "inserting prompt" in text


def test_close_while_another_thread_reads():
    with StubServer(CHALLENGE) as srv:
        conn = MapiConnection()
        conn.connect(srv.host, srv.port, "monetdb", "secret")
        line_reader = conn.reader
        failures = []

        def read():
            try:
                line_reader.readline()
            except (MapiError, OSError, ValueError) as e:
                failures.append(e)

        reading = threading.Thread(target=read, daemon=True)
        reading.start()
        time.sleep(0.2)

        closing = threading.Thread(target=conn.close, daemon=True)
        closing.start()
        closing.join(3.0)
        assert not closing.is_alive()
        reading.join(3.0)
        assert not reading.is_alive()
        assert len(failures) == 1
        assert conn.state is ConnectionState.DISCONNECTED


def test_redirect_chain():
    with StubServer(CHALLENGE, ["#at c", "#still c"]) as c:
        to_c = redirect_to(c)
        with StubServer(CHALLENGE, ["^" + to_c]) as b:
            to_b = redirect_to(b)
            with StubServer(CHALLENGE, ["^" + to_b]) as a, MapiConnection() as conn:
                warnings = conn.connect(a.host, a.port, "monetdb", "secret")
                assert warnings.split("\n") == [
                    f"Redirect by {a.host}:{a.port} to {to_b}",
                    f"Redirect by {b.host}:{b.port} to {to_c}",
                    "at c",
                    "still c",
                ]
                assert conn.port == c.port
    assert (a.connections, b.connections, c.connections) == (1, 1, 1)


def test_redirect_chain_budget():
    with StubServer(CHALLENGE, ["#at c"]) as c:
        with StubServer(CHALLENGE, ["^" + redirect_to(c)]) as b:
            config = SessionConfig(max_redirects=2)
            with StubServer(CHALLENGE, ["^" + redirect_to(b)]) as a, MapiConnection(config) as conn:
                with pytest.raises(TooManyRedirectsError, match="2"):
                    conn.connect(a.host, a.port, "monetdb", "secret")
    assert (a.connections, b.connections, c.connections) == (1, 1, 0)


class SettlingServer(StubServer):
    """Redirects the first connection, welcomes every later one."""

    def handle(self, conn):
        if self.connections > 1:
            self.replies = ["#settled"]
        super().handle(conn)


def test_redirect_without_port_keeps_current_port():
    uri = "mapi:monetdb://127.0.0.1/demo"
    with SettlingServer(CHALLENGE, ["^" + uri]) as srv, MapiConnection() as conn:
        warnings = conn.connect(srv.host, srv.port, "monetdb", "secret")
        assert warnings == f"Redirect by {srv.host}:{srv.port} to {uri}\nsettled"
        assert conn.port == srv.port
    assert srv.connections == 2
