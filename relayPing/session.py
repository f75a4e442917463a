"""
Сессия пинга на стороне агента: отправка запросов с заданным интервалом,
ожидание ответов и передача результатов клиенту
"""
import enum
import logging
import queue
import socket
import threading
import time

from relayPing import protocol
from relayPing.errors import InvalidIntentError, TransmitError
from relayPing.stats import CANCELLED, SessionSummary

log = logging.getLogger(__name__)


class State(enum.Enum):
    """
    Состояния сессии
    """
    STARTING = 0
    RUNNING = 1
    DRAINING = 2
    COMPLETED = 3
    CANCELLED = 4


def resolve_target(target):
    """
    :param target: имя или ip цели
    :return: ip цели
    :raise InvalidIntentError: адрес не разрешается
    """
    try:
        return socket.gethostbyname(target)
    except (OSError, UnicodeError) as err:
        raise InvalidIntentError("Не удалось разрешить адрес {}: {}".format(target, err),
                                 InvalidIntentError.UNRESOLVABLE) from err


class AgentSession:
    """
    Выполнение одного запроса на пинг.
    Отправкой занимается отдельный поток, а поток, вызвавший run(),
    передаёт результаты по мере их появления.
    """

    def __init__(self, intent, transport, correlator, allocator, emit):
        """
        :type intent: relayPing.protocol.PingIntent
        :param intent: параметры пинга
        :param transport: общий транспорт ICMP агента
        :param correlator: общая таблица ожидающих запросов
        :param allocator: выдача id сессий и номеров пакетов
        :param emit: функция отправки сообщения клиенту
        """
        self.intent = intent
        self.transport = transport
        self.correlator = correlator
        self.allocator = allocator
        self.emit = emit
        self.state = State.STARTING
        self.session_id = None
        self.address = None
        self.started_at = None
        self.outcomes = dict()
        self.tx = 0
        self.failure = None
        self.events = queue.Queue()
        self.cancelled = threading.Event()
        self.lock = threading.Lock()
        self.sender = None

    def run(self):
        """
        Выполнение сессии
        :return: итоговая статистика или None, если сессия отменена
        :raise InvalidIntentError: параметры неверны, пакеты не отправлялись
        :raise TransmitError: транспорт ICMP непригоден
        """
        self.intent.validate()
        self.address = resolve_target(self.intent.target)
        with self.lock:
            if self.state is not State.STARTING:
                return None
            self.session_id = self.allocator.allocate()
            self.started_at = time.monotonic()
            self.state = State.RUNNING
        log.info("Сессия %d: пинг %s (%s), пакетов: %s, интервал: %s с, таймаут: %s с",
                 self.session_id, self.intent.target, self.address,
                 self.intent.count or "до отмены", self.intent.interval, self.intent.timeout)
        self.sender = threading.Thread(target=self.pace, name="session-{}".format(self.session_id))
        self.sender.daemon = True
        self.sender.start()
        try:
            return self.collect()
        finally:
            self.cancelled.set()
            self.sender.join()
            self.correlator.cancel_session(self.session_id)
            self.allocator.release(self.session_id)
            log.debug("Сессия %d освобождена", self.session_id)

    def cancel(self):
        """
        Отмена сессии: отправка прекращается, ожидающие запросы снимаются
        :return: False, если сессия уже завершена
        """
        with self.lock:
            if self.state in (State.COMPLETED, State.CANCELLED):
                return False
            self.state = State.CANCELLED
            self.cancelled.set()
            session_id = self.session_id
        if session_id is not None:
            self.correlator.cancel_session(session_id)
            log.info("Сессия %d отменена", session_id)
        self.events.put(("cancelled",))
        return True

    def pace(self):
        """
        цикл отправки запросов
        """
        sequence = 0
        next_send = time.monotonic()
        try:
            while self.intent.count is None or sequence < self.intent.count:
                if self.cancelled.wait(max(0., next_send - time.monotonic())):
                    break
                next_send = time.monotonic() + self.intent.interval
                sequence += 1
                self.send(sequence)
        except TransmitError as err:
            log.error("Сессия %d: транспорт непригоден: %s", self.session_id, err)
            self.failure = err
            self.events.put(("failed",))
            return
        except Exception as err:
            log.exception("Сессия %d: ошибка отправки", self.session_id)
            self.failure = err
            self.events.put(("failed",))
            return
        self.events.put(("sent", self.tx))

    def send(self, sequence):
        """
        Регистрация и отправка одного запроса
        :param sequence: номер пакета в сессии
        """
        icmp_sequence = self.allocator.next_sequence(self.session_id)
        request = self.correlator.register(self.session_id, icmp_sequence, sequence, self.on_complete)
        self.tx += 1
        try:
            self.transport.send_echo(self.address, self.session_id, icmp_sequence, self.intent.length)
        except TransmitError as err:
            if err.fatal:
                raise
            log.warning("Сессия %d: пакет %d не отправлен: %s", self.session_id, sequence, err)
            self.correlator.expire(self.session_id, icmp_sequence)
            return
        self.correlator.schedule_expiry(request, self.intent.timeout)

    def on_complete(self, request, outcome):
        if outcome is CANCELLED:
            return
        self.events.put(("result", request.sequence, outcome))

    def collect(self):
        """
        Передача результатов по мере завершения запросов
        """
        resolved = 0
        sent = None
        while sent is None or resolved < sent:
            event = self.events.get()
            if event[0] == "result":
                _, sequence, outcome = event
                if self.cancelled.is_set():
                    continue
                self.outcomes[sequence] = outcome
                resolved += 1
                if not self.send_to_client(protocol.PingResult(sequence, outcome)):
                    return None
            elif event[0] == "sent":
                sent = event[1]
                with self.lock:
                    if self.state is State.RUNNING:
                        self.state = State.DRAINING
                log.debug("Сессия %d: отправлено %d, ожидание ответов", self.session_id, sent)
            elif event[0] == "failed":
                self.cancel()
                raise self.failure
            if self.state is State.CANCELLED:
                return None
        with self.lock:
            if self.state is State.CANCELLED:
                return None
            self.state = State.COMPLETED
        summary = self.summary()
        log.info("Сессия %d завершена: %s", self.session_id, summary)
        self.send_to_client(protocol.PingSummary.from_summary(summary))
        return summary

    def send_to_client(self, message):
        try:
            self.emit(message)
        except OSError as err:
            log.info("Сессия %d: управляющий канал закрыт: %s", self.session_id, err)
            self.cancel()
            return False
        return True

    def ordered_outcomes(self):
        """
        :return: результаты в порядке номеров пакетов
        """
        return [self.outcomes[sequence] for sequence in sorted(self.outcomes)]

    def summary(self):
        return SessionSummary.from_outcomes(self.tx, self.ordered_outcomes())
