import pytest

from relayPing.stats import Lost, Replied, SessionSummary


def test_empty_session():
    summary = SessionSummary.from_outcomes(0, [])
    assert summary == SessionSummary(0, 0, 0, 0., None, None, None)
    assert not summary.has_rtt


def test_rtt_only_over_replied():
    outcomes = [Replied(64, 0.010), Lost(), Replied(64, 0.030), Replied(63, 0.020)]
    summary = SessionSummary.from_outcomes(4, outcomes)
    assert (summary.tx, summary.rx, summary.lost) == (4, 3, 1)
    assert summary.loss_pct == 25.
    assert summary.rtt_min == 0.010
    assert summary.rtt_max == 0.030
    assert summary.rtt_avg == pytest.approx(0.020)


def test_all_lost():
    summary = SessionSummary.from_outcomes(4, [Lost()] * 4)
    assert (summary.rx, summary.lost, summary.loss_pct) == (0, 4, 100.)
    assert summary.rtt_min is None and summary.rtt_avg is None
    assert "rtt" not in str(summary)
    assert "100% packets loss" in str(summary)


def test_in_progress_session():
    summary = SessionSummary.from_outcomes(3, [Replied(64, 0.001)])
    assert summary.rx + summary.lost <= summary.tx
    assert summary.loss_pct == 0.


def test_str():
    summary = SessionSummary.from_outcomes(2, [Replied(64, 0.0015), Replied(64, 0.0025)])
    assert str(summary) == ("2 packets tx, 2 rx, 0 lost, 0% packets loss\n"
                            "rtt min/max/avg 1.500/2.500/2.000 ms")


def test_lost_equality():
    assert Lost() == Lost()
    assert Lost() != Replied(64, 0.)
    assert not Lost().replied and Replied(64, 0.).replied
