import logging
import socket
import sys
import time

from relayPing import DEFAULT_PORT
from relayPing import icmp
from relayPing import protocol
from relayPing.errors import IncompleteSessionError, ProtocolError, RemoteError
from relayPing.stats import Lost, SessionSummary

log = logging.getLogger(__name__)

# запас к интервалу и таймауту при ожидании очередного сообщения от агента
STALL_MARGIN = 5.


class Client:
    """
    Клиент, выполняющий пинг через агента
    """

    def __init__(self, relay, port=DEFAULT_PORT, quiet=False, out=None, connect_timeout=10.):
        """
        Инициализация клиента
        :type relay: str
        :type port: int
        :type quiet: bool
        :param relay: адрес агента
        :param port: порт агента
        :param quiet: не выводить результаты отдельных пакетов
        :param out: поток для вывода (по умолчанию sys.stdout)
        :param connect_timeout: время ожидания соединения с агентом
        """
        log.debug("Инициализация клиента: агент: %s:%d", relay, port)
        self.relay = relay
        self.port = port
        self.quiet = quiet
        self.out = out
        self.connect_timeout = connect_timeout
        self.outcomes = dict()
        self.interrupted = False
        self.sent_at = None

    def print(self, *args, **kwargs):
        print(*args, file=self.out if self.out is not None else sys.stdout, flush=True, **kwargs)

    def ping(self, target, count=4, interval=1., timeout=4., length=icmp.DEFAULT_PACKET_LENGTH):
        """
        Пинг цели через агента
        :param target: адрес цели
        :param count: кол-во пакетов, None - до прерывания
        :param interval: интервал между пакетами в секундах
        :param timeout: время ожидания ответа в секундах
        :param length: длина ICMP пакета
        :return: итоговая статистика
        :raise InvalidIntentError: неверные параметры
        :raise RemoteError: агент вернул ошибку
        :raise IncompleteSessionError: соединение оборвано до итоговой статистики
        :raise OSError: не удалось соединиться с агентом
        """
        intent = protocol.PingIntent(target, count, interval, timeout, length).validate()
        self.outcomes = dict()
        self.interrupted = False
        self.sent_at = None
        log.info("Пинг %s через агента %s:%d", target, self.relay, self.port)
        with socket.create_connection((self.relay, self.port), timeout=self.connect_timeout) as sock:
            sock.settimeout(intent.interval + intent.timeout + STALL_MARGIN)
            stream = sock.makefile("rb")
            try:
                protocol.send_message(sock, protocol.PingRequest.from_intent(intent))
                self.sent_at = time.monotonic()
                self.print("PING {} via {}:{}: {} bytes of data".format(
                    target, self.relay, self.port, intent.length))
                return self.receive(intent, stream)
            except KeyboardInterrupt:
                self.interrupted = True
                elapsed = None if self.sent_at is None else time.monotonic() - self.sent_at
                summary = self.interrupted_summary(intent, elapsed)
                log.info("Пинг прерван пользователем")
                self.render_summary(target, summary, interrupted=True)
                return summary
            finally:
                stream.close()

    def receive(self, intent, stream):
        """
        Приём результатов до итоговой статистики
        """
        while True:
            try:
                message = protocol.read_message(stream)
            except socket.timeout as err:
                raise IncompleteSessionError("Агент перестал отвечать", len(self.outcomes)) from err
            except (ProtocolError, ConnectionError) as err:
                raise IncompleteSessionError("Соединение с агентом оборвано: {}".format(err),
                                             len(self.outcomes)) from err
            if message is None:
                raise IncompleteSessionError("Агент закрыл соединение до итоговой статистики",
                                             len(self.outcomes))
            if isinstance(message, protocol.PingResult):
                self.record(intent, message)
            elif isinstance(message, protocol.PingSummary):
                return self.finish(intent, message)
            elif isinstance(message, protocol.Error):
                raise RemoteError(message.kind, message.message)
            else:
                raise ProtocolError("Неожиданное сообщение от агента: {}".format(message))

    def record(self, intent, result):
        if result.sequence in self.outcomes:
            log.warning("Повторный результат пакета %d", result.sequence)
        self.outcomes[result.sequence] = result.outcome
        if self.quiet:
            return
        outcome = result.outcome
        if outcome.replied:
            self.print("{} bytes from {}: seq {} ttl {} time {:.3f} ms".format(
                intent.length, intent.target, result.sequence, outcome.ttl, outcome.rtt * 1000.))
        else:
            self.print("request timeout for {}: seq {}".format(intent.target, result.sequence))

    def finish(self, intent, remote):
        """
        Подсчёт статистики по принятым результатам и сравнение со статистикой агента
        """
        summary = SessionSummary.from_outcomes(remote.tx, self.ordered_outcomes())
        if (summary.rx, summary.lost) != (remote.rx, remote.lost):
            log.warning("Статистика агента расходится с полученными результатами: "
                        "rx: %d/%d; lost: %d/%d", remote.rx, summary.rx, remote.lost, summary.lost)
        self.render_summary(intent.target, summary)
        return summary

    def ordered_outcomes(self):
        return [self.outcomes[sequence] for sequence in sorted(self.outcomes)]

    def sent_estimate(self, intent, elapsed):
        """
        Кол-во запросов, отправленных агентом к моменту прерывания:
        не меньше наибольшего полученного номера пакета и числа
        интервалов, прошедших с отправки запроса агенту
        :param elapsed: секунд с отправки запроса, None - запрос не отправлен
        """
        sent = max([len(self.outcomes)] + list(self.outcomes))
        if elapsed is None:
            return sent
        paced = int(elapsed / intent.interval) + 1
        if intent.count is not None:
            paced = min(paced, intent.count)
        return max(sent, paced)

    def interrupted_summary(self, intent, elapsed):
        """
        Статистика прерванного пинга: запросы без результата считаются потерянными
        """
        tx = self.sent_estimate(intent, elapsed)
        outcomes = self.ordered_outcomes()
        outcomes += [Lost()] * (tx - len(outcomes))
        return SessionSummary.from_outcomes(tx, outcomes)

    def render_summary(self, target, summary, interrupted=False):
        self.print()
        self.print("--- {} ping statistics{} ---".format(target, " (interrupted)" if interrupted else ""))
        self.print(summary)
