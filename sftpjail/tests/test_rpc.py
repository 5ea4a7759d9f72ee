from dataclasses import dataclass
from io import StringIO
import socket
import threading
from typing import List, Optional

import pytest

from sftpjail.protocol import (
    Attributes,
    NameEntry,
    NameResponse,
    ReadRequest,
    Request,
    Response,
)
from sftpjail.rpc import Client, Encoding, InvalidTokenError, Server


def free_endpoint() -> str:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]

    return f"tcp://127.0.0.1:{port}"


def start_server_thread(server: Server) -> str:
    endpoint = free_endpoint()

    t = threading.Thread(target=server.serve, args=(endpoint,), daemon=True)
    t.start()

    return endpoint


def test_call():
    class Service:
        @staticmethod
        def add(a, b):
            return a + b

    endpoint = start_server_thread(Server(Service()))

    client = Client(Service, endpoint, timeout_ms=5000)

    try:
        assert client.add(3, 5) == 8
    finally:
        client.close()


def test_nonexistent_call():
    class Service:
        pass

    endpoint = start_server_thread(Server(Service()))

    client = Client(Service, endpoint, timeout_ms=5000)

    try:
        with pytest.raises(AttributeError):
            client.foo()
    finally:
        client.close()


def test_private_method_not_exposed():
    class Service:
        @staticmethod
        def _secret():
            return "secret"

    endpoint = start_server_thread(Server(Service()))

    client = Client(Service, endpoint, timeout_ms=5000)

    try:
        with pytest.raises(AttributeError):
            client._secret()
    finally:
        client.close()


def test_successful_ping():
    class Service:
        pass

    endpoint = start_server_thread(Server(Service(), worker_count=2))

    client = Client(Service, endpoint, timeout_ms=5000)

    try:
        client.ping()
    finally:
        client.close()


def test_timeout():
    class Service:
        pass

    client = Client(Service, free_endpoint(), timeout_ms=1)

    try:
        with pytest.raises(IOError):
            client.foo()
    finally:
        client.close()


def test_socket_per_thread():
    class Service:
        pass

    endpoint = start_server_thread(Server(Service()))

    client = Client(Service, endpoint, timeout_ms=5000)

    try:
        client.ping()

        t = threading.Thread(target=client.ping)
        t.start()
        t.join()

        assert client.socket_count == 2
    finally:
        client.close()

    assert client.socket_count == 0


def test_concurrent_calls():
    class Service:
        @staticmethod
        def square(x):
            return x * x

    endpoint = start_server_thread(Server(Service(), worker_count=4))

    client = Client(Service, endpoint, timeout_ms=5000)
    results = {}

    def call(x):
        results[x] = client.square(x)

    try:
        threads = [threading.Thread(target=call, args=(x,)) for x in range(8)]

        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results == {x: x * x for x in range(8)}
    finally:
        client.close()


def test_tuple_serialization():
    class Service:
        @staticmethod
        def get_tuple():
            return (1, 2, 3)

    endpoint = start_server_thread(Server(Service()))

    client = Client(Service, endpoint, timeout_ms=5000)

    try:
        # tuples are serialized as lists
        assert client.get_tuple() == [1, 2, 3]
    finally:
        client.close()


def test_dataclasses():
    @dataclass
    class Point:
        x: int
        y: int

    @dataclass
    class Line:
        p1: Point
        p2: Point

    class Service:
        @staticmethod
        def make_line(p1: Point, p2: Point) -> Line:
            return Line(p1, p2)

    endpoint = start_server_thread(Server(Service()))

    client = Client(Service, endpoint, timeout_ms=5000)

    try:
        p1 = Point(1, 2)
        p2 = Point(3, 4)

        assert client.make_line(p1, p2) == Line(p1, p2)
    finally:
        client.close()


def test_dataclass_in_container_type():
    @dataclass
    class Point:
        x: int
        y: int

    class Service:
        @staticmethod
        def make_point_list(x: int, y: int) -> List[Point]:
            return [Point(x, y)]

    endpoint = start_server_thread(Server(Service()))

    client = Client(Service, endpoint, timeout_ms=5000)

    try:
        assert client.make_point_list(1, 2) == [Point(1, 2)]
    finally:
        client.close()


def test_request_union_types():
    class Service:
        @staticmethod
        def request(request: Request) -> Response:
            attrs = Attributes(0o100644, 1, 2, request.length, 3, 4)
            return NameResponse(request.id, [NameEntry("a", "a", attrs)])

    endpoint = start_server_thread(Server(Service()))

    client = Client(Service, endpoint, timeout_ms=5000)

    try:
        response = client.request(ReadRequest(7, b"\x00\x00\x00\x01", 0, 42))

        assert response == NameResponse(
            7, [NameEntry("a", "a", Attributes(0o100644, 1, 2, 42, 3, 4))]
        )
    finally:
        client.close()


def test_builtin_exceptions():
    class Service:
        @staticmethod
        def os_failure():
            raise OSError("foo")

        @staticmethod
        def key_failure():
            raise KeyError("bar")

    endpoint = start_server_thread(Server(Service()))

    client = Client(Service, endpoint, timeout_ms=5000)

    try:
        with pytest.raises(OSError) as e:
            client.os_failure()
        assert e.value.args == ("foo",)

        with pytest.raises(KeyError) as e:
            client.key_failure()
        assert e.value.args == ("bar",)
    finally:
        client.close()


def test_custom_exception():
    class CustomException(Exception):
        pass

    class Service:
        @staticmethod
        def custom_failure():
            raise CustomException("a", "b", "c")

    endpoint = start_server_thread(Server(Service()))

    client = Client(Service, endpoint, timeout_ms=5000)

    try:
        with pytest.raises(Exception) as e:
            client.custom_failure()
        assert e.value.args == ("a", "b", "c")
    finally:
        client.close()


@pytest.mark.parametrize("client_token", [None, "5678"])
def test_invalid_token(client_token: Optional[str]):
    class Service:
        pass

    endpoint = start_server_thread(Server(Service(), token="1234"))

    client = Client(Service, endpoint, token=client_token, timeout_ms=5000)

    try:
        with pytest.raises(InvalidTokenError):
            client.ping()
    finally:
        client.close()


def test_valid_token():
    class Service:
        pass

    endpoint = start_server_thread(Server(Service(), token="1234"))

    client = Client(Service, endpoint, token="1234", timeout_ms=5000)

    try:
        client.ping()
    finally:
        client.close()


def test_json_encoding_dataclasses():
    @dataclass
    class Point:
        x: int
        y: int

    @dataclass
    class Line:
        p1: Point
        p2: Point

    encoding = Encoding(Line)

    obj_in = ["abc", True, Line(Point(1, 2), Point(3, 4)), Point(5, 6)]

    io = StringIO()
    encoding.dump_json(obj_in, io)

    io.seek(0)
    obj_out = encoding.load_json(io)

    assert obj_in == obj_out


def test_json_encoding_exceptions():
    encoding = Encoding()

    exceptions_in = [OSError("a", "b"), TypeError("c"), NotImplementedError()]

    io = StringIO()
    encoding.dump_json(exceptions_in, io)

    io.seek(0)
    exceptions_out = encoding.load_json(io)

    assert isinstance(exceptions_out[0], OSError)
    assert exceptions_out[0].args == ("a", "b")

    assert isinstance(exceptions_out[1], TypeError)
    assert exceptions_out[1].args == ("c",)

    assert isinstance(exceptions_out[2], NotImplementedError)
    assert exceptions_out[2].args == ()


def test_unserializable_object():
    encoding = Encoding()

    with pytest.raises(ValueError):
        encoding.serialize_obj(set())


def test_deserialize_unknown_dataclass():
    @dataclass
    class Point:
        x: int
        y: int

    encoding = Encoding(Point)
    serialized = encoding.serialize_obj(Point(1, 2))

    with pytest.raises(TypeError):
        Encoding().deserialize_obj(serialized)
