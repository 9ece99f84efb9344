import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from feedsentry.detector import RealtimeDetector
from feedsentry.models import (
    AlertSeverity,
    DataPoint,
    Detection,
    EmergencyUrgency,
    MovementSeverity,
    MovementType,
    ResponseStatus,
)
from tests.fixtures import make_item

NOW = datetime(2025, 3, 4, 12, 0, tzinfo=timezone.utc)
FED_CUT = "Fed emergency rate cut announced amid market crash!!!"


@pytest.fixture
def detector():
    return RealtimeDetector()


# ------------------------- classification -----------------------------------


def test_fed_emergency_cut_is_an_emergency(detector):
    result = detector.identify_emergency_information(FED_CUT)
    assert result.is_emergency
    assert result.urgency_level in (EmergencyUrgency.HIGH, EmergencyUrgency.CRITICAL)
    assert result.category == "monetary_policy"
    assert {"fed", "rate cut", "crash", "emergency"} <= set(result.triggers)
    assert result.estimated_impact == 95


def test_off_topic_content_is_neutral(detector):
    result = detector.identify_emergency_information("Local bakery opens new store downtown")
    assert not result.is_emergency
    assert result.urgency_level == EmergencyUrgency.LOW
    assert result.triggers == []
    assert result.category == "general"


@pytest.mark.parametrize("content", [None, "", 12345])
def test_malformed_content_does_not_raise(detector, content):
    result = detector.identify_emergency_information(content)
    assert not result.is_emergency
    assert result.confidence == 0.0


def test_keywords_match_on_word_boundaries(detector):
    assert "war" not in detector.find_emergency_keywords("Analyst wins industry award")
    assert "war" in detector.find_emergency_keywords("Trade war fears hit the yuan")


def test_urgency_score_components(detector):
    assert detector.urgency_score("") == 0.0
    assert detector.urgency_score("BREAKING: SNB ACTS NOW!!!!") == pytest.approx(0.9)


@pytest.mark.parametrize(
    "score,level",
    [
        (0.95, EmergencyUrgency.CRITICAL),
        (0.9, EmergencyUrgency.CRITICAL),
        (0.8, EmergencyUrgency.HIGH),
        (0.6, EmergencyUrgency.MEDIUM),
        (0.59, EmergencyUrgency.LOW),
    ],
)
def test_classify_urgency_thresholds(detector, score, level):
    assert detector.classify_urgency(score) == level


def test_scan_items(detector):
    hit = make_item(FED_CUT)
    miss = make_item("Local bakery opens new store downtown")
    (found,) = detector.scan_items([miss, hit])
    assert found.id == f"emg_{hit.id[:16]}"
    assert found.source_id == "reuters_fx"


# --------------------------- movements --------------------------------------


def test_fresh_wire_decision_is_critical_news_impact(detector):
    item = make_item("central bank emergency rate decision", minutes_ago=1, now=NOW)
    movement = detector.analyze_item_for_movement(item, NOW)
    assert movement.type == MovementType.NEWS_IMPACT
    assert movement.severity == MovementSeverity.CRITICAL
    assert [a.action for a in movement.recommended_actions] == [
        "news_analysis",
        "emergency_protocol",
    ]
    assert movement.response_time_ms == pytest.approx(60_000)


def test_movement_severity_levels(detector):
    items = [
        make_item("Dollar news", source_id="local_blog", minutes_ago=120, now=NOW),
        make_item("important news on the euro", source_id="local_blog", minutes_ago=120, now=NOW),
        make_item("central bank emergency rate decision", source_id="local_blog", now=NOW),
        make_item("central bank emergency rate decision", now=NOW),
    ]
    movements = detector.detect_market_movements(items, NOW)
    assert [m.severity for m in movements] == [
        MovementSeverity.CRITICAL,
        MovementSeverity.MAJOR,
        MovementSeverity.MODERATE,
        MovementSeverity.MINOR,
    ]


@pytest.mark.parametrize(
    "text,kind",
    [
        ("yen surges after intervention", MovementType.PRICE_SURGE),
        ("trading volume jumps in sterling", MovementType.VOLUME_SPIKE),
        ("ecb statement due later", MovementType.NEWS_IMPACT),
        ("risk-off mood grips markets", MovementType.SENTIMENT_SHIFT),
        ("quiet session in asia", None),
    ],
)
def test_identify_movement_type(detector, text, kind):
    assert detector.identify_movement_type(text) == kind


def test_affected_instruments(detector):
    pairs = detector.identify_affected_instruments("EUR/USD and USDJPY slide as yen rallies")
    assert pairs == ["EURUSD", "USDJPY"]
    assert detector.identify_affected_instruments("sterling and the aussie firm") == [
        "GBPUSD",
        "AUDUSD",
    ]


def test_movement_to_emergency(detector):
    item = make_item("central bank emergency rate decision", now=NOW)
    movement = detector.analyze_item_for_movement(item, NOW)
    emergency = detector.movement_to_emergency(movement)
    assert emergency.id == f"mov_{item.id[:16]}"
    assert emergency.classification.urgency_level == EmergencyUrgency.CRITICAL
    assert emergency.classification.category == "monetary_policy"
    assert emergency.classification.triggers[0] == "news_impact"
    assert emergency.classification.estimated_impact == 95


# ------------------------- rapid response -----------------------------------


@pytest.mark.asyncio
async def test_rapid_response_completed(detector):
    emergency = detector.scan_items([make_item(FED_CUT)])[0]
    response = await detector.rapid_response(emergency)
    assert response.status == ResponseStatus.COMPLETED
    assert response.response_type == "policy_response"
    assert "Monitor central bank communications" in response.actions


@pytest.mark.asyncio
async def test_rapid_response_over_budget_is_executing():
    async def slow_provider(emergency, response_type):
        await asyncio.sleep(0.1)
        return ["late"]

    detector = RealtimeDetector(response_budget_secs=0.01, action_provider=slow_provider)
    emergency = detector.scan_items([make_item(FED_CUT)])[0]

    response = await detector.rapid_response(emergency)

    assert response.status == ResponseStatus.EXECUTING
    assert response.actions and "late" not in response.actions
    await asyncio.sleep(0.15)


@pytest.mark.asyncio
async def test_late_provider_failure_is_logged(caplog):
    async def failing_late(emergency, response_type):
        await asyncio.sleep(0.05)
        raise RuntimeError("provider crashed late")

    detector = RealtimeDetector(response_budget_secs=0.01, action_provider=failing_late)
    emergency = detector.scan_items([make_item(FED_CUT)])[0]

    with caplog.at_level("INFO", logger="detector"):
        response = await detector.rapid_response(emergency)
        await asyncio.sleep(0.1)

    assert response.status == ResponseStatus.EXECUTING
    late = [r for r in caplog.records if "rapid_response_late_failed" in r.getMessage()]
    assert len(late) == 1
    assert "provider crashed late" in late[0].getMessage()
    assert late[0].levelname == "WARNING"


@pytest.mark.asyncio
async def test_rapid_response_failure_variant():
    async def broken_provider(emergency, response_type):
        raise RuntimeError("provider down")

    detector = RealtimeDetector(action_provider=broken_provider)
    emergency = detector.scan_items([make_item(FED_CUT)])[0]

    response = await detector.rapid_response(emergency)

    assert response.status == ResponseStatus.FAILED
    assert response.error == "provider down"
    assert response.actions == []


# ------------------------ trends and breakouts ------------------------------


def test_breakout_needs_twenty_points(detector):
    assert not detector.detect_breakout([100.0] * 19).detected


def test_breakout_up_and_down(detector):
    up = detector.detect_breakout([100.0] * 15 + [101, 102, 103, 104, 105])
    assert (up.detected, up.direction) == (True, "up")
    assert up.strength == pytest.approx(0.05)

    down = detector.detect_breakout([100.0] * 15 + [99, 98, 97, 96, 95])
    assert (down.detected, down.direction) == (True, "down")

    assert not detector.detect_breakout([100.0] * 15 + [101.0] * 5).detected


def test_breakout_accepts_data_points(detector):
    points = [
        DataPoint(timestamp=NOW + timedelta(minutes=i), value=v)
        for i, v in enumerate([1.10] * 15 + [1.15] * 5)
    ]
    assert detector.detect_breakout(points).detected


def test_trend_acceleration(detector):
    (change,) = detector.detect_trend_changes([100.0] * 10 + [103.0] * 10, timeframe="1h")
    assert change.type == "trend_acceleration"
    assert change.direction == "up"
    assert change.confidence == pytest.approx(0.3)
    assert change.significance == pytest.approx(0.6)
    assert change.affected_instruments == ["EURUSD", "GBPUSD", "USDJPY"]
    assert change.timeframe == "1h"


def test_trend_reversal_uses_metadata_pairs(detector):
    changes = detector.detect_trend_changes(
        [100.0] * 10 + [90.0] * 10, metadata={"pairs": ["USDCHF"]}
    )
    assert [c.type for c in changes] == ["trend_reversal"]
    assert changes[0].direction == "down"
    assert changes[0].affected_instruments == ["USDCHF"]


def test_trend_needs_a_full_window(detector):
    assert detector.detect_trend_changes([1.0, 2.0, 3.0]) == []


# ------------------------------ alerts --------------------------------------


def test_alerts_sorted_by_severity(detector):
    detections = [
        Detection(id=f"d{i}", type="price_surge", confidence=c, source_id="reuters_fx", timestamp=NOW)
        for i, c in enumerate([0.3, 0.95, 0.55, 0.75])
    ]
    alerts = detector.generate_real_time_alerts(detections)
    assert [a.severity for a in alerts] == [
        AlertSeverity.CRITICAL,
        AlertSeverity.ERROR,
        AlertSeverity.WARNING,
        AlertSeverity.INFO,
    ]
    assert [a.action_required for a in alerts] == [True, True, False, False]
    assert alerts[0].message == "price_surge detected with 95% confidence from reuters_fx"


def test_movement_detections_confidence(detector):
    item = make_item("central bank emergency rate decision", now=NOW)
    movement = detector.analyze_item_for_movement(item, NOW)
    (detection,) = detector.movement_detections([movement])
    assert detection.confidence == 0.95
    assert detection.type == "news_impact"
