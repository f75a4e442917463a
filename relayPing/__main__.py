#!/usr/bin/sudo python3
import argparse
import logging
import signal
import sys
from enum import Enum

from relayPing import DEFAULT_COUNT, DEFAULT_INTERVAL, DEFAULT_PORT, DEFAULT_TIMEOUT, __version__
from relayPing import client
from relayPing import icmp
from relayPing import server
from relayPing.errors import IncompleteSessionError, InvalidIntentError, RemoteError, RelayPingError

log = logging.getLogger("relayPing")


class TypeOfApp(Enum):
    """
    Типы работы приложения
    """
    AGENT = 1
    CLIENT = 2


def port_number(value):
    port = int(value)
    if not 0 < port < 65536:
        raise argparse.ArgumentTypeError("неверный порт: {}".format(value))
    return port


def get_parser() -> argparse.ArgumentParser:
    """
    генерация парсера аргументов командной строки
    :return: сгенерированный парсер
    """
    parser = argparse.ArgumentParser(
        description="Пинг узла через агента, находящегося в разрешённом сегменте сети")
    parser.set_defaults(type=None)
    parser.add_argument("--version", "-V", action="version", version="%(prog)s " + __version__)
    parser.add_argument("--log_file", "-l", dest="log_file", type=argparse.FileType("a"),
                        default=sys.stderr, help="Путь до файла для логов")

    log_level = parser.add_mutually_exclusive_group()
    log_level.set_defaults(log_level=logging.INFO)
    log_level.add_argument("--error", "-e", dest="log_level",
                           action="store_const", const=logging.ERROR,
                           help="Ограничить логирование ошибками")
    log_level.add_argument("--info", "-i", dest="log_level",
                           action="store_const", const=logging.INFO,
                           help="Ограничить логирование информацией")
    log_level.add_argument("--debug", "-d", dest="log_level",
                           action="store_const", const=logging.DEBUG,
                           help="Ограничить логирование сообщениями для дебага")
    subparsers = parser.add_subparsers()

    agent_parser = subparsers.add_parser("agent", aliases=["a"], help="запуск агента")
    agent_parser.set_defaults(type=TypeOfApp.AGENT)
    agent_parser.add_argument("--port", "-p", type=port_number, default=DEFAULT_PORT,
                              help="Порт для управляющих соединений")
    agent_parser.add_argument("--bind", "-b", default="0.0.0.0",
                              help="Адрес для управляющих соединений")

    client_parser = subparsers.add_parser("ping", aliases=["p"], help="пинг через агента")
    client_parser.set_defaults(type=TypeOfApp.CLIENT)
    client_parser.add_argument("target", help="адрес цели")
    client_parser.add_argument("--relay", "-r", default="127.0.0.1", help="адрес агента")
    client_parser.add_argument("--port", "-p", type=port_number, default=DEFAULT_PORT,
                               help="порт агента")
    client_parser.add_argument("--count", "-c", type=int, default=DEFAULT_COUNT,
                               help="Кол-во пакетов, 0 - до прерывания")
    client_parser.add_argument("--interval", "-i", type=float, default=DEFAULT_INTERVAL,
                               help="Интервал между пакетами в секундах")
    client_parser.add_argument("--timeout", "-t", type=int, default=DEFAULT_TIMEOUT,
                               help="Время ожидания ответа в миллисекундах")
    client_parser.add_argument("--length", "-l", type=int, default=icmp.DEFAULT_PACKET_LENGTH,
                               help="Длина ICMP пакета")
    client_parser.add_argument("--quiet", "-q", action="store_const",
                               const=True, default=False, help="Не выводить результаты пакетов")

    return parser


def run_agent(args):
    """
    :return: код возврата
    """
    agent = server.Agent(args.bind, args.port)
    try:
        agent.start()
    except PermissionError:
        log.error("Нет прав на создание raw сокета, запустите агента от root")
        return 1
    except OSError as err:
        log.error("Не удалось запустить агента: %s", err)
        return 1
    signal.signal(signal.SIGTERM, agent.signal_terminating)
    try:
        agent.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        agent.stop()
    return 0


def run_client(args):
    """
    :return: код возврата
    """
    ping_client = client.Client(args.relay, args.port, quiet=args.quiet)
    try:
        ping_client.ping(args.target, args.count or None, args.interval,
                         args.timeout / 1000., args.length)
    except InvalidIntentError as err:
        log.error("Неверные параметры: %s", err)
        return 1
    except RemoteError as err:
        log.error("Агент вернул ошибку: %s", err)
        return 1
    except IncompleteSessionError as err:
        log.error("Сессия не завершена, получено результатов: %d: %s", err.received, err)
        return 2
    except (OSError, RelayPingError) as err:
        log.error("Ошибка соединения с агентом %s:%d: %s", args.relay, args.port, err)
        return 1
    return 0


def main(argv=None):
    parser = get_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(format="%(levelname)-8s [%(asctime)-15s; %(name)s]: %(message)s",
                        level=args.log_level, stream=args.log_file)

    if args.type == TypeOfApp.AGENT:
        return run_agent(args)
    elif args.type == TypeOfApp.CLIENT:
        return run_client(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
