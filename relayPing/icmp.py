"""
Функции для работы с ICMP ECHO REQUEST/REPLY через общий raw сокет
"""
import collections
import errno
import logging
import os
import socket
import struct
import threading
import time

from relayPing import utils
from relayPing.errors import TransmitError

log = logging.getLogger(__name__)

ICMP_ECHO_REPLY = 0
ICMP_ECHO_REQUEST = 8

PING_MAGIC = 0x19170923

# type, code, checksum, identifier, sequence number
ICMP_HEADER = struct.Struct("!BBHHH")
# magic, pid агента
PRIVATE_HEADER = struct.Struct("!II")

MIN_PACKET_LENGTH = ICMP_HEADER.size + PRIVATE_HEADER.size
MAX_PACKET_LENGTH = 65507
DEFAULT_PACKET_LENGTH = 64

# ошибки, после которых сокетом пользоваться нельзя
FATAL_ERRNOS = {errno.EBADF, errno.ENOTSOCK}

EchoReply = collections.namedtuple("EchoReply", "source identifier sequence ttl arrived_at")


def build_echo_request(icmp_id, sequence_num, length=DEFAULT_PACKET_LENGTH, pid=None):
    """
    Сборка ICMP ECHO REQUEST
    Формат данных после заголовка ICMP:
        magic                   : 4 bytes   ==  PING_MAGIC
        pid                     : 4 bytes   ==  pid агента
        заполнение              : length - 16 bytes, i & 0xFF
    :param icmp_id: идентификатор (id сессии)
    :param sequence_num: номер пакета
    :param length: длина ICMP пакета вместе с заголовком
    :param pid: pid, записываемый в пакет (по умолчанию pid процесса)
    :return: байты пакета с заполненной контрольной суммой
    """
    if not MIN_PACKET_LENGTH <= length <= MAX_PACKET_LENGTH:
        raise ValueError("длина пакета должна быть в диапазоне [{}, {}]: {}"
                         .format(MIN_PACKET_LENGTH, MAX_PACKET_LENGTH, length))
    if pid is None:
        pid = os.getpid()
    data = PRIVATE_HEADER.pack(PING_MAGIC, pid & 0xFFFFFFFF) + \
        bytes(i & 0xFF for i in range(length - MIN_PACKET_LENGTH))
    icmp_header = ICMP_HEADER.pack(ICMP_ECHO_REQUEST, 0, 0, icmp_id, sequence_num)
    icmp_checksum = utils.checksum(icmp_header + data)
    return ICMP_HEADER.pack(ICMP_ECHO_REQUEST, 0, icmp_checksum, icmp_id, sequence_num) + data


def parse_echo_reply(msg, pid=None, arrived_at=None):
    """
    Разбор пакета, принятого raw сокетом (IP заголовок + ICMP)
    :param msg: принятые байты
    :param pid: ожидаемый pid в данных пакета (по умолчанию pid процесса)
    :param arrived_at: время приёма
    :return: EchoReply или None, если это не наш ECHO REPLY
    """
    if pid is None:
        pid = os.getpid()
    msg = memoryview(msg)
    if len(msg) < 20 or msg[0] >> 4 != 4:
        return None
    ihl = (msg[0] & 0xF) * 4
    if ihl < 20 or len(msg) < ihl + MIN_PACKET_LENGTH:
        return None
    ttl = msg[8]
    icmp = msg[ihl:]
    icmp_type, icmp_code, _, icmp_id, seq_num = \
        ICMP_HEADER.unpack(icmp[:ICMP_HEADER.size].tobytes())
    if icmp_type != ICMP_ECHO_REPLY or icmp_code != 0:
        return None
    if utils.checksum(icmp) != 0:
        return None
    magic, sender_pid = PRIVATE_HEADER.unpack(
        icmp[ICMP_HEADER.size:MIN_PACKET_LENGTH].tobytes())
    if magic != PING_MAGIC or sender_pid != pid & 0xFFFFFFFF:
        return None
    source = socket.inet_ntoa(msg[12:16].tobytes())
    return EchoReply(source, icmp_id, seq_num, ttl, arrived_at)


class RawEchoTransport:
    """
    Общий для всех сессий агента raw сокет.
    Отправка безопасна из нескольких потоков,
    читать receive_stream() должен ровно один поток.
    """

    def __init__(self, sock=None, pid=None, poll_interval=1.):
        """
        :param sock: готовый сокет (по умолчанию открывается raw ICMP сокет,
                     для чего нужны права root; иначе PermissionError)
        :param pid: pid для данных пакетов
        :param poll_interval: период проверки закрытия транспорта при приёме
        """
        if sock is None:
            sock = socket.socket(socket.AF_INET, socket.SOCK_RAW, socket.IPPROTO_ICMP)
        self.sock = sock
        self.pid = os.getpid() if pid is None else pid
        self.poll_interval = poll_interval
        self.send_lock = threading.Lock()
        self.closed = threading.Event()
        self.streaming = False
        log.debug("Открыт транспорт ICMP: pid: %d", self.pid)

    def send_echo(self, target, session_id, sequence, length=DEFAULT_PACKET_LENGTH):
        """
        Посылка ICMP ECHO REQUEST
        :param target: ip адресата
        :param session_id: id сессии, записывается в identifier
        :param sequence: номер пакета (16 бит)
        :param length: длина ICMP пакета
        """
        msg = build_echo_request(session_id, sequence, length, self.pid)
        if self.closed.is_set():
            raise TransmitError("транспорт закрыт", fatal=True)
        try:
            with self.send_lock:
                self.sock.sendto(msg, (target, 0))
        except OSError as err:
            fatal = err.errno in FATAL_ERRNOS or self.closed.is_set()
            raise TransmitError("ошибка отправки на {}: {}".format(target, err), fatal=fatal) from err

    def receive_stream(self):
        """
        Бесконечная последовательность принятых ECHO REPLY.
        Чужие и повреждённые пакеты пропускаются.
        Заканчивается только после close(); повторно не запускается.
        :return: генератор EchoReply
        """
        if self.streaming:
            raise RuntimeError("приём уже запущен")
        self.streaming = True
        return self._receive()

    def _receive(self):
        self.sock.settimeout(self.poll_interval)
        while not self.closed.is_set():
            try:
                msg = self.sock.recv(65535)  # 65535 is a max value of total length
            except socket.timeout:
                continue
            except OSError:
                if self.closed.is_set():
                    break
                raise
            reply = parse_echo_reply(msg, self.pid, time.monotonic())
            if reply is not None:
                yield reply
        log.debug("Приём ICMP завершён")

    def close(self):
        if self.closed.is_set():
            return
        self.closed.set()
        self.sock.close()
        log.debug("Транспорт ICMP закрыт")
