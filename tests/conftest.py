import errno
import queue
import socket
import struct
import threading
import time

import pytest

from relayPing import icmp
from relayPing import utils
from relayPing.correlator import IdentifierAllocator, ReplyCorrelator
from relayPing.errors import TransmitError

AGENT_PID = 4242


def make_reply(icmp_id, sequence, pid=AGENT_PID, length=64, ttl=57, source="10.0.0.50",
               icmp_type=icmp.ICMP_ECHO_REPLY):
    """
    ECHO REPLY на запрос агента в том виде, в каком его отдаёт raw сокет
    """
    request = icmp.build_echo_request(icmp_id, sequence, length, pid)
    body = bytes([icmp_type, 0, 0, 0]) + request[4:]
    reply = body[:2] + struct.pack("!H", utils.checksum(body)) + body[4:]
    ip_header = struct.pack("!BBHHHBBH4s4s", 0x45, 0, 20 + len(reply), 0, 0, ttl, 1, 0,
                            socket.inet_aton(source), socket.inet_aton("10.0.0.1"))
    return ip_header + reply


class FakeRawSocket:
    def __init__(self, packets=()):
        self.packets = list(packets)
        self.sent = []
        self.closed = False
        self.timeout = None
        self.send_error = None

    def settimeout(self, timeout):
        self.timeout = timeout

    def sendto(self, msg, address):
        if self.closed:
            raise OSError(errno.EBADF, "Bad file descriptor")
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((msg, address))

    def recv(self, size):
        if self.closed:
            raise OSError(errno.EBADF, "Bad file descriptor")
        if self.packets:
            return self.packets.pop(0)
        time.sleep(0.001)
        raise socket.timeout

    def close(self):
        self.closed = True


class FakeTransport:
    """
    Транспорт, на который цель отвечает через delay секунд.
    drop: номера отправок (с 1) без ответа, True - без ответа на всё
    fail: номера отправок, завершающихся TransmitError
    fatal: номер отправки, после которой транспорт непригоден
    delays: задержка ответа по номеру отправки
    """

    def __init__(self, delay=0.001, ttl=64, drop=(), fail=(), fatal=None, delays=None):
        self.delay = delay
        self.ttl = ttl
        self.drop = drop
        self.fail = set(fail)
        self.fatal = fatal
        self.delays = delays or dict()
        self.sent = []
        self.lock = threading.Lock()
        self.replies = queue.Queue()
        self.closed = threading.Event()

    def send_echo(self, target, session_id, sequence, length=64):
        with self.lock:
            self.sent.append((target, session_id, sequence, length))
            number = len(self.sent)
        if self.closed.is_set() or (self.fatal is not None and number >= self.fatal):
            raise TransmitError("socket closed", fatal=True)
        if number in self.fail:
            raise TransmitError("no buffer space")
        if self.drop is True or number in self.drop:
            return
        delay = self.delays.get(number, self.delay)
        timer = threading.Timer(delay, self.reply, (target, session_id, sequence))
        timer.daemon = True
        timer.start()

    def reply(self, target, session_id, sequence):
        self.replies.put(icmp.EchoReply(target, session_id, sequence, self.ttl, time.monotonic()))

    def receive_stream(self):
        while not self.closed.is_set():
            try:
                yield self.replies.get(timeout=0.01)
            except queue.Empty:
                continue

    def close(self):
        self.closed.set()


@pytest.fixture
def correlator():
    correlator = ReplyCorrelator()
    yield correlator
    correlator.close()


@pytest.fixture
def allocator():
    return IdentifierAllocator(first=1)


@pytest.fixture
def pump():
    """
    Запускает поток приёма ответов транспорта, как это делает агент
    """
    transports = []

    def start(transport, correlator):
        def loop():
            for reply in transport.receive_stream():
                correlator.resolve(reply.identifier, reply.sequence, reply.ttl, reply.arrived_at)
        thread = threading.Thread(target=loop)
        thread.daemon = True
        thread.start()
        transports.append((transport, thread))
        return transport

    yield start
    for transport, thread in transports:
        transport.close()
        thread.join(1)


class Collector:
    def __init__(self):
        self.messages = []
        self.lock = threading.Lock()

    def __call__(self, message):
        with self.lock:
            self.messages.append(message)

    def of_type(self, cls):
        with self.lock:
            return [message for message in self.messages if isinstance(message, cls)]


@pytest.fixture
def emitted():
    return Collector()


@pytest.fixture
def reply_packet():
    return make_reply


@pytest.fixture
def raw_socket():
    return FakeRawSocket


@pytest.fixture
def fake_transport():
    return FakeTransport
