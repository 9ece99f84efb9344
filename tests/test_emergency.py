import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from feedsentry.emergency import (
    AlertChannel,
    EmergencyHandler,
    LogAlertChannel,
    WebhookAlertChannel,
    default_protocols,
    notification_message,
    select_channels,
)
from feedsentry.models import (
    EmergencyClassification,
    EmergencyInformation,
    EmergencyResponse,
    EmergencyUrgency,
    ResponseStatus,
)


def _emergency(
    emergency_id="emg_1",
    category="market_crisis",
    urgency=EmergencyUrgency.CRITICAL,
    content="Flash crash in sterling",
):
    return EmergencyInformation(
        id=emergency_id,
        classification=EmergencyClassification(
            is_emergency=True,
            urgency_level=urgency,
            category=category,
            confidence=0.9,
            triggers=["crash"],
            estimated_impact=80,
        ),
        content=content,
        source_id="reuters_fx",
        affected_instruments=["GBPUSD"],
    )


class RecordingChannel(AlertChannel):
    def __init__(self, name, priority, fail=False, active=True):
        self.name = name
        self.priority = priority
        self.fail = fail
        self.active = active
        self.messages = []

    async def send(self, emergency, message):
        if self.fail:
            raise ConnectionError(f"{self.name} unreachable")
        self.messages.append(message)


# ----------------------------- protocols ------------------------------------


def test_default_protocols_split_immediate_and_follow_up():
    protocols = default_protocols()
    crisis = protocols["market_crisis"]
    assert [s.action for s in crisis.immediate_steps] == ["assess_severity", "notify_stakeholders"]
    assert [s.action for s in crisis.follow_up_steps] == ["activate_safeguards"]
    policy = protocols["monetary_policy"]
    assert [s.action for s in policy.immediate_steps] == ["parse_policy_change", "calculate_impact"]
    assert protocols["default"].follow_up_steps == []


def test_select_protocol_falls_back_to_market_crisis():
    handler = EmergencyHandler()
    assert handler.select_protocol(_emergency(category="monetary_policy")).id == "monetary_policy"
    assert handler.select_protocol(_emergency(category="geopolitical")).id == "market_crisis"


# ------------------------------ channels ------------------------------------


@pytest.mark.parametrize(
    "urgency,expected",
    [
        (EmergencyUrgency.CRITICAL, ["pager", "chat", "email", "log"]),
        (EmergencyUrgency.HIGH, ["pager", "chat"]),
        (EmergencyUrgency.MEDIUM, ["pager", "chat", "email"]),
        (EmergencyUrgency.LOW, ["pager", "chat", "email", "log"]),
    ],
)
def test_select_channels_by_urgency(urgency, expected):
    channels = [
        RecordingChannel("pager", 1),
        RecordingChannel("chat", 2),
        RecordingChannel("email", 3),
        RecordingChannel("log", 4),
        RecordingChannel("muted", 1, active=False),
    ]
    assert [c.name for c in select_channels(channels, urgency)] == expected


def test_notification_message():
    message = notification_message(_emergency())
    assert message.startswith("EMERGENCY ALERT: MARKET_CRISIS - CRITICAL urgency.")
    assert "Flash crash in sterling" in message


@pytest.mark.asyncio
async def test_log_channel_emits_warning(caplog):
    with caplog.at_level("WARNING", logger="emergency"):
        await LogAlertChannel().send(_emergency(), "msg")
    (record,) = caplog.records
    assert "emergency_alert id=emg_1" in record.getMessage()
    assert record.alert_message == "msg"


def _webhook_session(status):
    resp = MagicMock()
    resp.status = status
    ctx = MagicMock()
    ctx.__aenter__ = AsyncMock(return_value=resp)
    ctx.__aexit__ = AsyncMock(return_value=False)
    session = MagicMock()
    session.post = MagicMock(return_value=ctx)
    return session


@pytest.mark.asyncio
async def test_webhook_posts_json_payload():
    session = _webhook_session(204)
    await WebhookAlertChannel("https://hooks.example.com/fx", session=session).send(
        _emergency(), "msg"
    )
    url = session.post.call_args.args[0]
    payload = session.post.call_args.kwargs["json"]
    assert url == "https://hooks.example.com/fx"
    assert payload["id"] == "emg_1"
    assert payload["urgency"] == "critical"
    assert payload["instruments"] == ["GBPUSD"]


@pytest.mark.asyncio
async def test_webhook_error_status_raises():
    channel = WebhookAlertChannel("https://hooks.example.com/fx", session=_webhook_session(502))
    with pytest.raises(RuntimeError):
        await channel.send(_emergency(), "msg")


def test_with_webhook_registers_channel():
    assert [c.name for c in EmergencyHandler.with_webhook("").channels] == ["log"]
    handler = EmergencyHandler.with_webhook("https://hooks.example.com/fx")
    assert [c.name for c in handler.channels] == ["log", "webhook"]


# ------------------------------ handling ------------------------------------


@pytest.mark.asyncio
async def test_handle_emergency_completes_protocol():
    pager = RecordingChannel("pager", 1)
    handler = EmergencyHandler(channels=[pager])

    response = await handler.handle_emergency_information(_emergency())

    assert response.status == ResponseStatus.COMPLETED
    assert response.within_time_limit
    assert response.protocol == "market_crisis"
    assert [(a.action, a.status) for a in response.actions] == [
        ("assess_severity", "completed"),
        ("notify_stakeholders", "completed"),
        ("activate_safeguards", "pending"),
    ]
    assert response.actions[1].parameters["urgency"] == "high"
    assert response.notified == ["pager"]
    assert len(pager.messages) == 1
    assert not response.escalated
    assert handler.history["emg_1"] == [response]


@pytest.mark.asyncio
async def test_notification_failure_is_recorded_not_raised():
    handler = EmergencyHandler(
        channels=[RecordingChannel("pager", 1, fail=True), RecordingChannel("log", 4)]
    )
    response = await handler.handle_emergency_information(_emergency())
    assert response.status == ResponseStatus.COMPLETED
    assert response.notified == ["log"]
    assert response.notification_failures == ["pager"]


@pytest.mark.asyncio
async def test_failing_step_is_marked_failed():
    async def executor(step, emergency):
        if step.action == "calculate_impact":
            raise ValueError("model unavailable")
        return {}

    handler = EmergencyHandler(channels=[], step_executor=executor)
    response = await handler.handle_emergency_information(_emergency(category="monetary_policy"))

    assert response.status == ResponseStatus.COMPLETED
    failed = [a for a in response.actions if a.status == "failed"]
    assert [(a.action, a.error) for a in failed] == [("calculate_impact", "model unavailable")]


@pytest.mark.asyncio
async def test_slow_response_is_escalated():
    async def executor(step, emergency):
        await asyncio.sleep(0.02)
        return {}

    handler = EmergencyHandler(channels=[], step_executor=executor, escalation_secs=0.01)
    response = await handler.handle_emergency_information(_emergency())
    assert response.status == ResponseStatus.COMPLETED
    assert response.escalated


@pytest.mark.asyncio
async def test_over_budget_response_is_executing():
    async def executor(step, emergency):
        await asyncio.sleep(1)
        return {}

    handler = EmergencyHandler(channels=[], step_executor=executor, response_budget_secs=0.05)
    response = await handler.handle_emergency_information(_emergency())

    assert response.status == ResponseStatus.EXECUTING
    assert not response.within_time_limit
    assert [a.status for a in response.actions] == ["pending"]


@pytest.mark.asyncio
async def test_internal_error_yields_failed_response():
    handler = EmergencyHandler(channels=[])

    def boom(emergency, protocol):
        raise RuntimeError("protocol table corrupt")

    handler.prepare_follow_up_actions = boom
    response = await handler.handle_emergency_information(_emergency())

    assert response.status == ResponseStatus.FAILED
    assert response.protocol == "error"
    assert response.error == "protocol table corrupt"
    assert response.response_time_ms >= 0
    assert not response.escalated
    assert handler.history["emg_1"] == [response]


@pytest.mark.asyncio
async def test_handle_many_isolates_failures():
    handler = EmergencyHandler(channels=[])
    original = handler.prepare_follow_up_actions

    def picky(emergency, protocol):
        if emergency.id == "bad":
            raise RuntimeError("nope")
        return original(emergency, protocol)

    handler.prepare_follow_up_actions = picky
    good, bad = await handler.handle_many([_emergency("good"), _emergency("bad")])

    assert good.status == ResponseStatus.COMPLETED
    assert bad.status == ResponseStatus.FAILED


# ------------------------------ analysis ------------------------------------


@pytest.mark.asyncio
async def test_analyze_emergency_response():
    handler = EmergencyHandler(channels=[])
    response = await handler.handle_emergency_information(_emergency())

    analysis = handler.analyze_emergency_response(response)

    assert analysis.response_id == response.id
    assert analysis.effectiveness == 77
    assert analysis.timeliness == 100
    assert analysis.accuracy == 100
    assert analysis.improvements == []
    assert "All immediate steps completed" in analysis.lessons_learned
    assert "Activate automated trading safeguards" in analysis.next_actions
    assert "Run post-emergency review within 24 hours" in analysis.next_actions


def test_analyze_unknown_emergency_raises():
    response = EmergencyResponse(
        id="r1",
        emergency_id="never_seen",
        protocol="default",
        actions=[],
        status=ResponseStatus.COMPLETED,
        response_time_ms=1.0,
    )
    with pytest.raises(KeyError):
        EmergencyHandler().analyze_emergency_response(response)


@pytest.mark.asyncio
async def test_history_keeps_most_recent_emergencies():
    handler = EmergencyHandler(channels=[], history_limit=3)
    for i in range(10):
        await handler.handle_emergency_information(_emergency(f"emg_{i}"))
    again = await handler.handle_emergency_information(_emergency("emg_7"))

    assert list(handler.history) == ["emg_8", "emg_9", "emg_7"]
    assert len(handler.history["emg_7"]) == 2
    assert handler.analyze_emergency_response(again).response_id == again.id
    evicted = EmergencyResponse(
        id="r_old",
        emergency_id="emg_0",
        protocol="default",
        actions=[],
        status=ResponseStatus.COMPLETED,
        response_time_ms=1.0,
    )
    with pytest.raises(KeyError):
        handler.analyze_emergency_response(evicted)
