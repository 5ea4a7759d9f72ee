"""
RPC bridge between an SFTP front-end process and the session core.

The front-end terminates SSH connections and parses SFTP packets, and forwards the
resulting typed requests to the core, which owns all file system access. Running the
two in different processes keeps the code that touches user files away from the code
that talks to the network.

The bridge is built on ZeroMQ and MessagePack:

* Calls are method invocations on a service object, named by the method name, with the
arguments and return value serialized as MessagePack.
* Dataclasses (requests, responses, user records) are serialized automatically based
on the type annotations of the service methods.
* Builtin exceptions like KeyError are recreated faithfully on the client side, other
exceptions arrive as a plain Exception with the original arguments.
* The server distributes calls over a pool of worker threads, so a slow file system
call of one session doesn't hold up other sessions, and the requests of a single
session can be pipelined by calling from multiple client threads.
* Each call carries a shared secret token. There is no encryption; the bridge is meant
to run over a local socket.

The same Encoding class also serializes dataclasses to JSON for storage on disk.
"""

from abc import ABC
import builtins
import dataclasses
from enum import IntEnum
import functools
import json
import logging
import threading
import time
import typing
from typing import Any, Callable, Dict, IO, Iterable, List, NoReturn, Optional, Tuple

import msgpack
import zmq

from sftpjail.logger import log, summarize

# Keys that mark a serialized dataclass or exception within an encoded document
DATACLASS_TAG = "__dataclass__"
EXCEPTION_TAG = "__exception__"


class Encoding:
    """
    Serialization and deserialization of objects using JSON or MessagePack.

    Only dataclasses that have been registered can be deserialized, either directly or
    by being reachable from the fields of a registered dataclass.
    """

    def __init__(self, *types: Any):
        """Instantiate an encoding that supports the dataclasses used by the types."""
        self._dataclasses: Dict[str, type] = {}

        self.register_dataclasses(*types)

    def register_dataclasses(self, *types: Any) -> None:
        """Register every dataclass that the given types consist of."""
        for cls in self._discover_dataclasses(types):
            self._dataclasses[cls.__qualname__] = cls

    def pack(self, obj: Any) -> bytes:
        """Serialize an object using MessagePack."""
        return msgpack.packb(obj, default=self.serialize_obj)

    def unpack(self, data: bytes) -> Any:
        """Deserialize an object using MessagePack."""
        return msgpack.unpackb(data, object_hook=self.deserialize_obj)

    def dump_json(self, obj: Any, fp: IO[str]) -> None:
        """Serialize an object to JSON, formatted for humans to read."""
        json.dump(obj, fp, default=self.serialize_obj, indent=2, sort_keys=True)

    def load_json(self, fp: IO[str]) -> Any:
        """Deserialize an object from JSON."""
        return json.load(fp, object_hook=self.deserialize_obj)

    def serialize_obj(self, obj: Any) -> Any:
        """
        Convert an object that has no native representation into a tagged dict.

        Used as hook for the serializers, which call it for every value they can't
        handle themselves.
        """
        if isinstance(obj, BaseException):
            return {EXCEPTION_TAG: [obj.__class__.__qualname__, list(obj.args)]}

        type_name = obj.__class__.__qualname__

        if self._dataclasses.get(type_name) is not obj.__class__:
            raise ValueError(f"unserializable object {summarize(obj)}")

        values = {f.name: getattr(obj, f.name) for f in dataclasses.fields(obj)}

        return {DATACLASS_TAG: [type_name, values]}

    def deserialize_obj(self, obj: Any) -> Any:
        """Convert a tagged dict back into the object it represents."""
        if not isinstance(obj, dict) or len(obj) != 1:
            return obj
        elif EXCEPTION_TAG in obj:
            name, args = obj[EXCEPTION_TAG]
            return self._make_exception(name, args)
        elif DATACLASS_TAG in obj:
            type_name, values = obj[DATACLASS_TAG]
            return self._make_dataclass(type_name, values)
        else:
            return obj

    @staticmethod
    def _make_exception(name: str, args: List[Any]) -> BaseException:
        """
        Instantiate an exception by its class name.

        Only builtin exception types (like KeyError) can be recreated as their own type,
        anything else becomes a plain Exception with the same arguments.
        """
        exc_type = getattr(builtins, name, None)

        if not isinstance(exc_type, type) or not issubclass(exc_type, BaseException):
            exc_type = Exception

        return exc_type(*args)

    def _make_dataclass(self, type_name: str, values: Dict[str, Any]) -> Any:
        cls = self._dataclasses.get(type_name)

        if cls is None:
            raise TypeError(f"unknown dataclass '{type_name}'")

        try:
            return cls(**values)
        except TypeError as e:
            raise TypeError(f"failed to deserialize {type_name}: {e}")

    @staticmethod
    def _discover_dataclasses(types: Iterable[Any]) -> List[type]:
        """
        Find the dataclasses that the given types consist of.

        The search looks into the fields of dataclasses and into the arguments of
        generic types, so List[Optional[T]] or Union[A, B] yield T, A and B.
        """
        pending = list(types)
        seen: List[Any] = []
        found: List[type] = []

        while pending:
            candidate = pending.pop()

            if candidate in seen:
                continue

            seen.append(candidate)

            if isinstance(candidate, type) and dataclasses.is_dataclass(candidate):
                found.append(candidate)
                pending.extend(typing.get_type_hints(candidate).values())
            else:
                pending.extend(typing.get_args(candidate))

        return found


class Reply(IntEnum):
    """Kind of reply to an RPC call."""

    RESULT = 0
    ERROR = 1
    UNAUTHORIZED = 2


class InvalidTokenError(RuntimeError):
    """Exception raised when the server refused a call because of its token."""


class Base(ABC):
    """Shared logic between RPC client and server implementation."""

    def __init__(self, service_type: type):
        """Prepare the encoding of the argument and return types of a service class."""
        self._encoding = Encoding(*self._public_signature_types(service_type))

    @staticmethod
    def _public_signature_types(service_type: type) -> List[Any]:
        """Collect the annotated types of all public methods of a service class."""
        signature_types: List[Any] = []

        for name in dir(service_type):
            if name.startswith("_"):
                continue

            member = getattr(service_type, name)

            if callable(member):
                signature_types.extend(typing.get_type_hints(member).values())

        return signature_types


class Server(Base):
    """
    RPC server that exposes the public methods of a service instance.

    Example:
    ```
    server = rpc.Server(SessionService(store, config), token="secret", worker_count=4)
    server.serve("tcp://127.0.0.1:7022")
    ```
    """

    def __init__(
        self, service: Any, token: Optional[str] = None, worker_count: int = 1
    ):
        """
        Instantiate an RPC server for the given service instance.

        If a token is specified then clients need to present the same token with every
        call. Incoming calls are distributed across the specified number of worker
        threads.
        """
        super().__init__(type(service))

        self.service = service
        self.token = token
        self.worker_count = worker_count

        self.context = zmq.Context()
        self._workers_endpoint = f"inproc://workers-{id(self)}"

    def serve(self, endpoint: str) -> NoReturn:
        """
        Accept calls on the endpoint and never return.

        The endpoint has the format of zmq_bind, for example "tcp://127.0.0.1:7022".
        Calls arrive on a ROUTER socket and are passed on to the workers through a
        DEALER socket, which hands each call to the next idle worker.
        """
        frontend = self.context.socket(zmq.ROUTER)
        frontend.bind(endpoint)

        backend = self.context.socket(zmq.DEALER)
        backend.bind(self._workers_endpoint)

        for i in range(self.worker_count):
            threading.Thread(
                target=self._work, name=f"rpc-worker-{i}", daemon=True
            ).start()

        log.info(
            f"serving {type(self.service).__name__} on {endpoint}"
            f" with {self.worker_count} workers"
        )

        zmq.proxy(frontend, backend)

        raise RuntimeError("rpc proxy stopped unexpectedly")

    def _work(self) -> NoReturn:
        """Answer calls passed on by the proxy, one at a time."""
        sock = self.context.socket(zmq.REP)
        sock.connect(self._workers_endpoint)

        while True:
            reply = self._answer(sock.recv())

            try:
                data = self._encoding.pack(reply)
            except (TypeError, ValueError) as e:
                log.error(f"failed to serialize rpc reply: {e}")
                data = self._encoding.pack((Reply.ERROR, ValueError(str(e))))

            sock.send(data)

    def _answer(self, message: bytes) -> Tuple[int, Any]:
        """Execute a serialized call and return the reply to send back."""
        try:
            token, method, args = self._encoding.unpack(message)
        except Exception as e:
            log.error(f"received malformed rpc call: {e}")
            return (Reply.ERROR, ValueError(f"malformed call: {e}"))

        if token != self.token:
            log.warning(f"refused call to {method} with invalid token")
            return (Reply.UNAUTHORIZED, None)

        try:
            return (Reply.RESULT, self._invoke(method, args))
        except Exception as e:
            return (Reply.ERROR, e)

    def _invoke(self, method: Optional[str], args: List[Any]) -> Any:
        # A call without method name is a ping
        if method is None:
            return None
        elif method.startswith("_"):
            raise AttributeError(f"'{method}' is not exposed")

        return getattr(self.service, method)(*args)


class Client(Base):
    """
    RPC client to invoke methods on a service instance exposed by an RPC server.

    A single client can be used by multiple threads and internally creates a socket per
    thread, since a request socket only allows one call in flight at a time.

    Example:
    ```
    core = rpc.Client(SessionService, "tcp://127.0.0.1:7022", token="secret")
    session_id = core.open_session("alice", PROTOCOL_VERSION)
    ```
    """

    def __init__(
        self,
        service_type: type,
        endpoint: str,
        token: Optional[str] = None,
        timeout_ms: int = -1,
    ) -> None:
        """
        Instantiate an RPC client for the service type at the given endpoint.

        The endpoint has the format of zmq_connect, for example "tcp://127.0.0.1:7022".
        Calls that take longer than timeout_ms milliseconds raise IOError, unless it is
        -1.
        """
        super().__init__(service_type)

        self.endpoint = endpoint
        self.token = token
        self.timeout_ms = timeout_ms

        self.context = zmq.Context()

        self._sockets: Dict[threading.Thread, zmq.Socket] = {}
        self._sockets_lock = threading.Lock()

    @property
    def socket_count(self) -> int:
        """Return the number of threads that have a socket of this client."""
        with self._sockets_lock:
            return len(self._sockets)

    def ping(self) -> None:
        """Check if the service is available, raising IOError if it isn't."""
        self._call(None)

    def close(self) -> None:
        """Close the sockets of all threads and terminate the ZeroMQ context."""
        with self._sockets_lock:
            for sock in self._sockets.values():
                sock.close(linger=0)

            self._sockets.clear()

        self.context.destroy(linger=0)

    def __getattr__(self, name: str) -> Callable[..., Any]:
        """Return a function that calls the remote method with the given name."""
        if name.startswith("__"):
            raise AttributeError(name)

        return functools.partial(self._call, name)

    def _thread_socket(self) -> zmq.Socket:
        """Return the socket of the calling thread, connecting one if it has none."""
        thread = threading.current_thread()

        with self._sockets_lock:
            sock = self._sockets.get(thread)

            if sock is None:
                sock = self.context.socket(zmq.REQ)
                sock.setsockopt(zmq.SNDTIMEO, self.timeout_ms)
                sock.setsockopt(zmq.RCVTIMEO, self.timeout_ms)
                sock.connect(self.endpoint)

                self._sockets[thread] = sock

        return sock

    def _call(self, method: Optional[str], *args: Any) -> Any:
        """Call a remote method and return its result or raise its exception."""
        sock = self._thread_socket()

        started = time.time()

        try:
            sock.send(self._encoding.pack((self.token, method, args)))
            kind, value = self._encoding.unpack(sock.recv())
        except zmq.ZMQError as e:
            raise IOError(f"rpc call to {method} failed: {e}")

        # Explicit check because summarizing arguments is relatively slow
        if log.isEnabledFor(logging.DEBUG):
            elapsed_ms = round((time.time() - started) * 1000)
            summary = ", ".join(summarize(arg, 80) for arg in args)
            log.debug(f"rpc::{method}({summary}) - {elapsed_ms} ms")

        if kind == Reply.RESULT:
            return value
        elif kind == Reply.ERROR:
            raise value
        elif kind == Reply.UNAUTHORIZED:
            raise InvalidTokenError("token mismatch between client and server")
        else:
            raise ValueError(f"unexpected reply kind {kind}")
