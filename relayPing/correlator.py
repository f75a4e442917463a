"""
Сопоставление принятых ECHO REPLY с отправленными ECHO REQUEST.
Один raw сокет агента обслуживает все сессии, поэтому ответы разбираются
по ключу (id сессии, sequence number) в общей таблице ожидающих запросов.
"""
import heapq
import itertools
import logging
import os
import threading
import time

from relayPing.errors import DuplicateKeyError
from relayPing.stats import CANCELLED, Lost, Replied

log = logging.getLogger(__name__)

MAX_ID = 0xFFFF
MAX_SEQUENCE = 0xFFFF


class IdentifierAllocator:
    """
    Выдача id сессий и номеров пакетов (поля identifier и sequence number ICMP)
    """

    def __init__(self, first=None):
        """
        :param first: первый выдаваемый id (по умолчанию младшие 16 бит pid)
        """
        self.lock = threading.Lock()
        self.next_id = (os.getpid() if first is None else first) & MAX_ID
        self.sequences = dict()

    def allocate(self):
        """
        :return: id, не занятый ни одной живой сессией
        """
        with self.lock:
            if len(self.sequences) > MAX_ID:
                raise RuntimeError("Нет свободных id сессий")
            while self.next_id in self.sequences:
                self.next_id = (self.next_id + 1) & MAX_ID
            session_id = self.next_id
            self.sequences[session_id] = 0
            self.next_id = (session_id + 1) & MAX_ID
            return session_id

    def next_sequence(self, session_id):
        """
        Номера начинаются с 1 и идут по модулю 65536
        :param session_id: id сессии
        :return: следующий sequence number сессии
        """
        with self.lock:
            sequence = (self.sequences[session_id] + 1) & MAX_SEQUENCE
            self.sequences[session_id] = sequence
            return sequence

    def release(self, session_id):
        with self.lock:
            self.sequences.pop(session_id, None)

    def __len__(self):
        with self.lock:
            return len(self.sequences)


class PendingRequest:
    """
    Запрос, ожидающий ответа
    """

    def __init__(self, session_id, icmp_sequence, sequence, on_complete=None):
        """
        :type session_id: int
        :type icmp_sequence: int
        :type sequence: int
        :param session_id: id сессии
        :param icmp_sequence: sequence number в ICMP пакете (16 бит)
        :param sequence: номер пакета в сессии
        :param on_complete: вызывается с (запрос, результат) при завершении
        """
        self.session_id = session_id
        self.icmp_sequence = icmp_sequence
        self.sequence = sequence
        self.on_complete = on_complete
        self.sent_at = time.monotonic()
        self.outcome = None
        self.done = threading.Event()

    @property
    def key(self):
        return self.session_id, self.icmp_sequence

    def complete(self, outcome):
        self.outcome = outcome
        self.done.set()
        if self.on_complete is not None:
            self.on_complete(self, outcome)

    def wait(self, timeout=None):
        """
        :return: результат или None, если он не получен за timeout
        """
        if self.done.wait(timeout):
            return self.outcome
        return None

    def __repr__(self):
        return "PendingRequest(session_id={}, icmp_sequence={}, sequence={})".format(
            self.session_id, self.icmp_sequence, self.sequence)


class ReplyCorrelator:
    """
    Потокобезопасная таблица ожидающих запросов.
    Каждый запрос завершается ровно одним из: ответ, таймаут, отмена.
    Таймауты всех запросов обслуживает один поток, который ждёт
    ближайший срок в куче (срок, порядковый номер, запрос).
    """

    def __init__(self):
        self.lock = threading.Lock()
        self.expiry_changed = threading.Condition(self.lock)
        self.pending = dict()
        self.expiries = []
        self.expiry_order = itertools.count()
        self.expiry_thread = None
        self.closed = False

    def register(self, session_id, icmp_sequence, sequence=None, on_complete=None):
        """
        Регистрация запроса непосредственно перед отправкой
        :param session_id: id сессии
        :param icmp_sequence: sequence number в ICMP пакете
        :param sequence: номер пакета в сессии (по умолчанию icmp_sequence)
        :param on_complete: обработчик завершения запроса
        :return: PendingRequest
        """
        request = PendingRequest(session_id, icmp_sequence,
                                 icmp_sequence if sequence is None else sequence,
                                 on_complete)
        with self.lock:
            if request.key in self.pending:
                raise DuplicateKeyError("Запрос уже ожидает ответа: {}".format(self.pending[request.key]))
            self.pending[request.key] = request
        return request

    def schedule_expiry(self, request, timeout):
        """
        Постановка запроса в очередь таймаутов со сроком request.sent_at + timeout
        :return: False, если запрос уже завершён
        """
        deadline = request.sent_at + timeout
        with self.expiry_changed:
            if self.closed or self.pending.get(request.key) is not request:
                return False
            heapq.heappush(self.expiries, (deadline, next(self.expiry_order), request))
            if self.expiry_thread is None:
                self.expiry_thread = threading.Thread(target=self.expire_due, name="icmp-expiry")
                self.expiry_thread.daemon = True
                self.expiry_thread.start()
            elif self.expiries[0][2] is request:
                self.expiry_changed.notify()
        return True

    def expire_due(self):
        """
        поток таймаутов
        """
        while True:
            with self.expiry_changed:
                while not self.closed:
                    if not self.expiries:
                        self.expiry_changed.wait()
                        continue
                    delay = self.expiries[0][0] - time.monotonic()
                    if delay <= 0:
                        break
                    self.expiry_changed.wait(delay)
                if self.closed:
                    return
                now = time.monotonic()
                due = []
                while self.expiries and self.expiries[0][0] <= now:
                    request = heapq.heappop(self.expiries)[2]
                    # запрос, уже получивший ответ или снятый, в таблице не найдётся
                    if self.pending.get(request.key) is request:
                        del self.pending[request.key]
                        due.append(request)
            for request in due:
                try:
                    request.complete(Lost())
                except Exception:
                    log.exception("Ошибка обработки таймаута: %s", request)

    def close(self):
        """
        Остановка потока таймаутов
        """
        with self.expiry_changed:
            self.closed = True
            self.expiries.clear()
            self.expiry_changed.notify()
        if self.expiry_thread is not None and self.expiry_thread is not threading.current_thread():
            self.expiry_thread.join()

    def _take(self, key):
        with self.lock:
            return self.pending.pop(key, None)

    def resolve(self, identifier, sequence, ttl, arrived_at):
        """
        Сопоставление принятого ответа
        :param identifier: identifier из ECHO REPLY
        :param sequence: sequence number из ECHO REPLY
        :param ttl: ttl ответа
        :param arrived_at: время приёма (time.monotonic())
        :return: id сессии, которой принадлежит ответ, или None для
                 опоздавших, повторных и чужих ответов
        """
        request = self._take((identifier, sequence))
        if request is None:
            return None
        request.complete(Replied(ttl, max(0., arrived_at - request.sent_at)))
        return request.session_id

    def expire(self, session_id, icmp_sequence):
        """
        Завершение запроса по таймауту
        :return: False, если ответ уже успел прийти
        """
        request = self._take((session_id, icmp_sequence))
        if request is None:
            return False
        request.complete(Lost())
        return True

    def cancel_session(self, session_id):
        """
        Снятие всех ожидающих запросов сессии
        :return: кол-во снятых запросов
        """
        with self.lock:
            requests = [request for key, request in self.pending.items() if key[0] == session_id]
            for request in requests:
                del self.pending[request.key]
            if requests:
                self.expiries = [entry for entry in self.expiries if entry[2].session_id != session_id]
                heapq.heapify(self.expiries)
        for request in requests:
            request.complete(CANCELLED)
        if requests:
            log.debug("Сессия %d: снято ожидающих запросов: %d", session_id, len(requests))
        return len(requests)

    def pending_count(self, session_id=None):
        with self.lock:
            if session_id is None:
                return len(self.pending)
            return sum(1 for key in self.pending if key[0] == session_id)
