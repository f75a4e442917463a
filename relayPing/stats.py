"""
Результаты отдельных пакетов и итоговая статистика сессии
"""
import collections


class Replied(collections.namedtuple("Replied", "ttl rtt")):
    """
    Получен ответ
    ttl: ttl ответа
    rtt: время приёма - время отправки, в секундах
    """
    __slots__ = ()
    replied = True


class Lost:
    """
    Ответ не получен до истечения таймаута
    """
    __slots__ = ()
    replied = False

    def __eq__(self, other):
        return isinstance(other, Lost)

    def __hash__(self):
        return hash(Lost)

    def __repr__(self):
        return "Lost()"


class Cancelled:
    """
    Запрос снят вместе с сессией, результата нет
    """
    __slots__ = ()
    replied = False

    def __repr__(self):
        return "CANCELLED"


CANCELLED = Cancelled()


class SessionSummary(collections.namedtuple(
        "SessionSummary", "tx rx lost loss_pct rtt_min rtt_max rtt_avg")):
    """
    Итоговая статистика сессии. rtt_* в секундах, None, если ответов не было.
    """
    __slots__ = ()

    @classmethod
    def from_outcomes(cls, tx, outcomes):
        """
        Подсчёт статистики
        :param tx: кол-во отправленных запросов
        :param outcomes: результаты пакетов (Replied / Lost)
        :return: SessionSummary
        """
        rtts = [outcome.rtt for outcome in outcomes if outcome.replied]
        rx = len(rtts)
        lost = sum(1 for outcome in outcomes if not outcome.replied)
        loss_pct = lost * 100. / tx if tx else 0.
        if rtts:
            return cls(tx, rx, lost, loss_pct, min(rtts), max(rtts), sum(rtts) / rx)
        return cls(tx, rx, lost, loss_pct, None, None, None)

    @property
    def has_rtt(self):
        return self.rtt_min is not None

    def __str__(self):
        text = "{} packets tx, {} rx, {} lost, {:g}% packets loss".format(
            self.tx, self.rx, self.lost, round(self.loss_pct, 1))
        if self.has_rtt:
            text += "\nrtt min/max/avg {:.3f}/{:.3f}/{:.3f} ms".format(
                self.rtt_min * 1000., self.rtt_max * 1000., self.rtt_avg * 1000.)
        return text
