"""
                                   relay-ping
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
          Пинг узла через агента, находящегося в разрешённом сегменте сети
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Клиент посылает агенту по TCP запрос на пинг (см. relayPing.protocol),
агент выполняет обмен ICMP ECHO REQUEST/REPLY с целью через общий raw сокет
и возвращает результат каждого пакета и итоговую статистику.
Формат ICMP Echo Request агента:
    ICMP            : length bytes
        type                : 1 byte            ==  8
        code                : 1 byte            ==  0
        checksum            : 2 bytes           ==  16 битный обратный код
                                                    дополняющей суммы всех
                                                    16 битных слов
                                                    начиная с поля type.
        identifier          : 2 bytes           ==  id сессии агента
        sequence number     : 2 bytes           ==  начинается с 1
                                                    и увеличивается на 1
                                                    по модулю 65536
        magic               : 4 bytes           ==  0x19170923
        pid                 : 4 bytes           ==  pid агента
        заполнение          : length - 16 bytes ==  i & 0xFF
"""
__version__ = "0.1.0"

DEFAULT_PORT = 2000
DEFAULT_COUNT = 0
DEFAULT_INTERVAL = 1.
DEFAULT_TIMEOUT = 4000

import relayPing.utils
import relayPing.errors
import relayPing.stats
import relayPing.icmp
import relayPing.correlator
import relayPing.protocol
import relayPing.session
import relayPing.server
import relayPing.client
