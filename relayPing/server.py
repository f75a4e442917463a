import logging
import socket
import signal
import threading

from relayPing import DEFAULT_PORT
from relayPing import icmp
from relayPing import protocol
from relayPing.correlator import IdentifierAllocator, ReplyCorrelator
from relayPing.errors import InvalidIntentError, ProtocolError, TransmitError
from relayPing.session import AgentSession

log = logging.getLogger(__name__)


class Agent:
    """
    Агент, выполняющий пинг по запросам клиентов.
    Все сессии используют один raw сокет, ответы из которого
    читает единственный поток приёма.
    """

    def __init__(self, host="0.0.0.0", port=DEFAULT_PORT, transport=None, request_timeout=10.):
        """
        Инициализация агента
        :type host: str
        :type port: int
        :param host: адрес для управляющих соединений
        :param port: порт для управляющих соединений
        :param transport: транспорт ICMP (по умолчанию raw сокет, создаётся в start())
        :param request_timeout: время ожидания запроса от клиента
        """
        log.debug("Инициализация агента: адрес: %s; порт: %d", host, port)
        self.host = host
        self.port = port
        self.address = None
        self.transport = transport
        self.request_timeout = request_timeout
        self.correlator = ReplyCorrelator()
        self.allocator = IdentifierAllocator()
        self.sessions = set()
        self.sessions_lock = threading.Lock()
        self.runnable = threading.Event()
        self.sock = None
        self.receiver_thread = None

    def start(self):
        """
        Открытие raw сокета и управляющего порта.
        Без прав на raw сокет выбрасывается PermissionError
        до того, как агент начнёт принимать соединения.
        """
        if self.transport is None:
            self.transport = icmp.RawEchoTransport()
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.host, self.port))
            sock.listen()
        except OSError:
            sock.close()
            self.transport.close()
            raise
        self.sock = sock
        self.address = sock.getsockname()
        self.runnable.set()
        self.receiver_thread = threading.Thread(target=self.receiver, name="icmp-receiver")
        self.receiver_thread.daemon = True
        self.receiver_thread.start()
        log.info("Агент запущен: %s:%d", *self.address)

    def run(self):
        """
        запуск агента до вызова stop()
        """
        self.start()
        try:
            self.serve_forever()
        finally:
            self.stop()

    def stop(self):
        """
        остановка агента
        """
        if not self.runnable.is_set():
            return
        self.runnable.clear()
        log.info("Агент завершает работу")
        with self.sessions_lock:
            sessions = list(self.sessions)
        for session in sessions:
            session.cancel()
        self.transport.close()
        self.correlator.close()
        if self.sock is not None:
            self.sock.close()

    def signal_terminating(self, _, __):
        self.stop()
        signal.signal(signal.SIGTERM, signal.SIG_DFL)

    def serve_forever(self):
        """
        слушатель управляющих соединений
        """
        self.sock.settimeout(1)
        log.info("Агент начал прослушивание запросов")
        while self.runnable.is_set():
            try:
                conn, addr = self.sock.accept()
            except socket.timeout:
                continue
            except OSError:
                if not self.runnable.is_set():
                    break
                raise
            conn.settimeout(None)
            worker = threading.Thread(target=self.handle, args=(conn, addr))
            worker.daemon = True
            worker.start()
        log.info("Агент закончил прослушивание запросов")

    def receiver(self):
        """
        поток приёма ECHO REPLY
        """
        log.debug("Запущен приём ICMP")
        try:
            for reply in self.transport.receive_stream():
                session_id = self.correlator.resolve(reply.identifier, reply.sequence,
                                                     reply.ttl, reply.arrived_at)
                if session_id is None:
                    log.debug("Ответ не ожидается: ip: %s; id: %d; seq_num: %d",
                              reply.source, reply.identifier, reply.sequence)
        except Exception:
            log.exception("Ошибка приёма ICMP, агент останавливается")
            self.stop()

    def handle(self, conn, addr):
        """
        обработчик управляющего соединения
        :param conn: сокет соединения
        :param addr: адрес клиента
        """
        log.debug("Соединение: %s:%d", *addr)
        stream = conn.makefile("rb")
        send_lock = threading.Lock()

        def emit(message):
            with send_lock:
                protocol.send_message(conn, message)

        try:
            request = self.read_request(conn, stream, emit)
            if request is None:
                return
            session = AgentSession(request.to_intent(), self.transport,
                                   self.correlator, self.allocator, emit)
            with self.sessions_lock:
                if not self.runnable.is_set():
                    return
                self.sessions.add(session)
            try:
                watcher = threading.Thread(target=self.watch, args=(conn, session))
                watcher.daemon = True
                watcher.start()
                self.run_session(session, emit)
            finally:
                with self.sessions_lock:
                    self.sessions.discard(session)
        finally:
            try:
                conn.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            stream.close()
            conn.close()
            log.debug("Соединение закрыто: %s:%d", *addr)

    def read_request(self, conn, stream, emit):
        """
        :return: PingRequest или None, если запрос не получен
        """
        conn.settimeout(self.request_timeout)
        try:
            message = protocol.read_message(stream)
        except socket.timeout:
            log.info("Не дождались запроса от клиента")
            return None
        except ProtocolError as err:
            log.info("Неверный запрос: %s", err)
            self.send_error(emit, protocol.ERROR_PROTOCOL, str(err))
            return None
        except OSError as err:
            log.info("Ошибка чтения запроса: %s", err)
            return None
        conn.settimeout(None)
        if message is None:
            return None
        if not isinstance(message, protocol.PingRequest):
            self.send_error(emit, protocol.ERROR_PROTOCOL,
                            "Ожидался запрос на пинг, получено: {}".format(type(message).__name__))
            return None
        return message

    def run_session(self, session, emit):
        try:
            session.run()
        except InvalidIntentError as err:
            log.info("Неверный запрос на пинг: %s", err)
            self.send_error(emit, err.kind, str(err))
        except TransmitError as err:
            self.send_error(emit, protocol.ERROR_TRANSPORT, str(err))
        except Exception as err:
            log.exception("Неизвестная ошибка в сессии")
            self.send_error(emit, protocol.ERROR_INTERNAL, str(err))

    def watch(self, conn, session):
        """
        Отмена сессии при закрытии соединения клиентом
        """
        try:
            while conn.recv(1024):
                pass
        except OSError:
            pass
        session.cancel()

    @staticmethod
    def send_error(emit, kind, message):
        try:
            emit(protocol.Error(kind, message))
        except OSError as err:
            log.debug("Не удалось отправить ошибку клиенту: %s", err)
