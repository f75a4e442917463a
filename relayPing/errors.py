"""
Исключения relay-ping
"""


class RelayPingError(Exception):
    """
    Базовое исключение приложения
    """


class InvalidIntentError(RelayPingError):
    """
    Запрос на пинг не может быть выполнен: неверные параметры
    или неразрешимый адрес цели. Сессия не начинается.
    """
    INVALID = "invalid"
    UNRESOLVABLE = "unresolvable"

    def __init__(self, message, kind=INVALID):
        super().__init__(message)
        self.kind = kind


class TransmitError(RelayPingError):
    """
    Ошибка отправки ICMP ECHO REQUEST
    fatal == True означает, что транспорт больше непригоден
    """

    def __init__(self, message, fatal=False):
        super().__init__(message)
        self.fatal = fatal


class ProtocolError(RelayPingError):
    """
    Нарушение формата управляющего канала
    """


class RemoteError(RelayPingError):
    """
    Агент прислал сообщение об ошибке вместо результатов
    """

    def __init__(self, kind, message):
        super().__init__("{}: {}".format(kind, message))
        self.kind = kind
        self.message = message


class IncompleteSessionError(RelayPingError):
    """
    Управляющий канал закрылся до получения итоговой статистики
    """

    def __init__(self, message, received=0):
        super().__init__(message)
        self.received = received


class DuplicateKeyError(RuntimeError):
    """
    Повторная регистрация ожидающего запроса с тем же ключом.
    Нарушение инварианта, а не ошибка пользователя.
    """
