"""
Вспомогательные функции: контрольная сумма и перевод единиц времени
"""


def carry_around_add(a, b):
    """
    дополняющая сумма
    :param a: первое слагаемое
    :param b: второе слагаемое
    :return: дополняющая сумма a и b
    """
    c = a + b
    return (c & 0xFFFF) + (c >> 16)


def checksum(msg):
    """
    обратный код 16 битной дополняющей суммы 16 битных слов msg
    (контрольная сумма заголовков IP и ICMP)
    :param msg: байты для подсчёта контрольной суммы
    :return: контрольная сумма; 0 для сообщения с верной контрольной суммой
    """
    s = 0
    for i in range(1, len(msg), 2):
        w = int(msg[i]) | (int(msg[i - 1]) << 8)
        s = carry_around_add(s, w)
    if len(msg) % 2 == 1:
        s = carry_around_add(s, int(msg[len(msg) - 1]) << 8)
    return ~s & 0xFFFF


def to_millis(seconds):
    """
    :param seconds: время в секундах или None
    :return: время в миллисекундах или None
    """
    if seconds is None:
        return None
    return seconds * 1000.


def from_millis(millis):
    """
    :param millis: время в миллисекундах или None
    :return: время в секундах или None
    """
    if millis is None:
        return None
    return millis / 1000.
