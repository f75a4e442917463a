"""
Управляющий протокол между клиентом и агентом.
Канал: TCP, сообщения передаются кадрами
    length              : 4 bytes   ==  длина тела кадра, <= 65535
    тело кадра:
        ascii string    : 15 bytes  ==  тип сообщения
        данные сообщения

Запрос на пинг (клиент -> агент, один раз за сессию):
    ascii string        : 15 bytes  ==  "relay-ping-preq"
    count               : 4 bytes   ==  кол-во пакетов, 0 - до отмены
    interval            : 4 bytes   ==  интервал между пакетами в мс
    timeout             : 4 bytes   ==  время ожидания ответа в мс
    length              : 2 bytes   ==  длина ICMP пакета
    target              : <= 255    ==  utf-8 строка, адрес цели
Результат пакета (агент -> клиент, по одному на пакет, в порядке получения):
    ascii string        : 15 bytes  ==  "relay-ping-pres"
    sequence number     : 4 bytes   ==  номер пакета, начиная с 1
    replied             : 1 byte    ==  1 если получен ответ, 0 если потерян
    ttl                 : 1 byte
    rtt                 : 8 bytes   ==  double, мс
Итоговая статистика (агент -> клиент, последнее сообщение сессии):
    ascii string        : 15 bytes  ==  "relay-ping-psum"
    tx, rx, lost        : 3 x 4 bytes
    loss                : 8 bytes   ==  double, проценты
    has rtt             : 1 byte    ==  0 если ответов не было
    rtt min, max, avg   : 3 x 8 bytes   только если has rtt == 1
Ошибка (агент -> клиент, заменяет остаток сессии):
    ascii string        : 15 bytes  ==  "relay-ping-perr"
    kind                : Нуль-терминированная utf-8 строка
    message             : utf-8 строка
"""
import collections
import logging
import struct

from relayPing import icmp
from relayPing import utils
from relayPing.errors import InvalidIntentError, ProtocolError
from relayPing.stats import Lost, Replied, SessionSummary

log = logging.getLogger(__name__)

TAG_SIZE = 15
TAG_REQUEST = b'relay-ping-preq'
TAG_RESULT = b'relay-ping-pres'
TAG_SUMMARY = b'relay-ping-psum'
TAG_ERROR = b'relay-ping-perr'

FRAME = struct.Struct("!I")
REQUEST = struct.Struct("!IIIH")
RESULT = struct.Struct("!IBBd")
SUMMARY = struct.Struct("!IIIdB")
SUMMARY_RTT = struct.Struct("!ddd")

MAX_BODY_SIZE = 65535
MAX_TARGET_SIZE = 255
MAX_COUNT = 0xFFFFFFFF
MIN_INTERVAL_MS = 10
MAX_INTERVAL_MS = 3600 * 1000
MIN_TIMEOUT_MS = 1
MAX_TIMEOUT_MS = 600 * 1000

# виды ошибок в сообщении Error
ERROR_INVALID = InvalidIntentError.INVALID
ERROR_UNRESOLVABLE = InvalidIntentError.UNRESOLVABLE
ERROR_TRANSPORT = "transport"
ERROR_PROTOCOL = "protocol"
ERROR_INTERNAL = "internal"


class PingIntent(collections.namedtuple("PingIntent", "target count interval timeout length")):
    """
    Параметры пинга: адрес цели, кол-во пакетов (None - до отмены),
    интервал и таймаут в секундах, длина ICMP пакета
    """
    __slots__ = ()

    def __new__(cls, target, count=4, interval=1., timeout=4., length=icmp.DEFAULT_PACKET_LENGTH):
        return super().__new__(cls, target, count, interval, timeout, length)

    def validate(self):
        """
        Проверка параметров без разрешения адреса
        :raise InvalidIntentError: параметры некорректны
        """
        if not isinstance(self.target, str) or not self.target \
                or len(self.target.encode("UTF-8")) > MAX_TARGET_SIZE:
            raise InvalidIntentError("Неверный адрес цели: {!r}".format(self.target))
        if self.count is not None and not 1 <= self.count <= MAX_COUNT:
            raise InvalidIntentError("Неверное кол-во пакетов: {}".format(self.count))
        if self.interval is None or not MIN_INTERVAL_MS <= utils.to_millis(self.interval) <= MAX_INTERVAL_MS:
            raise InvalidIntentError("Неверный интервал: {}".format(self.interval))
        if self.timeout is None or not MIN_TIMEOUT_MS <= utils.to_millis(self.timeout) <= MAX_TIMEOUT_MS:
            raise InvalidIntentError("Неверный таймаут: {}".format(self.timeout))
        if not icmp.MIN_PACKET_LENGTH <= self.length <= icmp.MAX_PACKET_LENGTH:
            raise InvalidIntentError("Неверная длина пакета: {}".format(self.length))
        return self


class PingRequest(collections.namedtuple("PingRequest", "target count interval_ms timeout_ms length")):
    __slots__ = ()

    @classmethod
    def from_intent(cls, intent):
        return cls(intent.target, intent.count or 0,
                   int(round(utils.to_millis(intent.interval))),
                   int(round(utils.to_millis(intent.timeout))),
                   intent.length)

    def to_intent(self):
        return PingIntent(self.target, self.count or None,
                          utils.from_millis(self.interval_ms),
                          utils.from_millis(self.timeout_ms),
                          self.length)


class PingResult(collections.namedtuple("PingResult", "sequence outcome")):
    """
    Результат одного пакета: Replied или Lost
    """
    __slots__ = ()


class PingSummary(collections.namedtuple(
        "PingSummary", "tx rx lost loss_pct rtt_min_ms rtt_max_ms rtt_avg_ms")):
    __slots__ = ()

    @classmethod
    def from_summary(cls, summary):
        return cls(summary.tx, summary.rx, summary.lost, summary.loss_pct,
                   utils.to_millis(summary.rtt_min),
                   utils.to_millis(summary.rtt_max),
                   utils.to_millis(summary.rtt_avg))

    def to_summary(self):
        return SessionSummary(self.tx, self.rx, self.lost, self.loss_pct,
                              utils.from_millis(self.rtt_min_ms),
                              utils.from_millis(self.rtt_max_ms),
                              utils.from_millis(self.rtt_avg_ms))


class Error(collections.namedtuple("Error", "kind message")):
    __slots__ = ()


def encode(message):
    """
    Кодирование сообщения в кадр
    :param message: PingRequest, PingResult, PingSummary или Error
    :return: байты кадра
    """
    if isinstance(message, PingRequest):
        body = TAG_REQUEST + REQUEST.pack(message.count, message.interval_ms,
                                          message.timeout_ms, message.length) \
            + message.target.encode("UTF-8")
    elif isinstance(message, PingResult):
        outcome = message.outcome
        if outcome.replied:
            body = TAG_RESULT + RESULT.pack(message.sequence, 1, outcome.ttl, utils.to_millis(outcome.rtt))
        else:
            body = TAG_RESULT + RESULT.pack(message.sequence, 0, 0, 0.)
    elif isinstance(message, PingSummary):
        has_rtt = message.rtt_min_ms is not None
        body = TAG_SUMMARY + SUMMARY.pack(message.tx, message.rx, message.lost,
                                          message.loss_pct, 1 if has_rtt else 0)
        if has_rtt:
            body += SUMMARY_RTT.pack(message.rtt_min_ms, message.rtt_max_ms, message.rtt_avg_ms)
    elif isinstance(message, Error):
        body = TAG_ERROR + message.kind.encode("UTF-8") + b'\0' + message.message.encode("UTF-8")
    else:
        raise TypeError("Неизвестный тип сообщения: {!r}".format(message))
    if len(body) > MAX_BODY_SIZE:
        raise ValueError("Превышен максимальный размер сообщения: {}".format(len(body)))
    return FRAME.pack(len(body)) + body


def decode(body):
    """
    Разбор тела кадра
    :param body: тело кадра
    :return: сообщение
    :raise ProtocolError: неизвестный тип или неверный формат
    """
    body = bytes(body)
    tag, data = body[:TAG_SIZE], body[TAG_SIZE:]
    try:
        if tag == TAG_REQUEST:
            count, interval_ms, timeout_ms, length = REQUEST.unpack(data[:REQUEST.size])
            target = data[REQUEST.size:].decode("UTF-8")
            return PingRequest(target, count, interval_ms, timeout_ms, length)
        elif tag == TAG_RESULT:
            sequence, replied, ttl, rtt_ms = RESULT.unpack(data)
            outcome = Replied(ttl, utils.from_millis(rtt_ms)) if replied else Lost()
            return PingResult(sequence, outcome)
        elif tag == TAG_SUMMARY:
            tx, rx, lost, loss_pct, has_rtt = SUMMARY.unpack(data[:SUMMARY.size])
            rtt = (None, None, None)
            if has_rtt:
                rtt = SUMMARY_RTT.unpack(data[SUMMARY.size:])
            elif len(data) != SUMMARY.size:
                raise ProtocolError("Лишние данные в итоговой статистике")
            return PingSummary(tx, rx, lost, loss_pct, *rtt)
        elif tag == TAG_ERROR:
            kind, sep, message = data.partition(b'\0')
            if not sep:
                raise ProtocolError("Нет разделителя в сообщении об ошибке")
            return Error(kind.decode("UTF-8"), message.decode("UTF-8"))
    except (struct.error, UnicodeDecodeError) as err:
        raise ProtocolError("Неверный формат сообщения {}: {}".format(tag, err)) from err
    raise ProtocolError("Неизвестный тип сообщения: {}".format(tag))


def read_message(stream):
    """
    Чтение одного сообщения
    :param stream: буферизованный поток (socket.makefile("rb"))
    :return: сообщение или None, если канал закрыт между кадрами
    :raise ProtocolError: кадр оборван или неверен
    """
    header = stream.read(FRAME.size)
    if not header:
        return None
    if len(header) < FRAME.size:
        raise ProtocolError("Канал закрыт посреди заголовка кадра")
    size, = FRAME.unpack(header)
    if size < TAG_SIZE or size > MAX_BODY_SIZE:
        raise ProtocolError("Неверная длина кадра: {}".format(size))
    body = stream.read(size)
    if len(body) < size:
        raise ProtocolError("Канал закрыт посреди кадра")
    message = decode(body)
    log.debug("Принято сообщение: %s", message)
    return message


def send_message(sock, message):
    """
    Посылка сообщения
    :param sock: TCP сокет
    :param message: сообщение
    """
    sock.sendall(encode(message))
    log.debug("Отправлено сообщение: %s", message)
