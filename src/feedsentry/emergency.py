"""
Emergency response handling.

Each :class:`EmergencyInformation` is resolved independently:

1. pick the response protocol for its category
2. run the protocol's immediate steps (required, order <= 2)
3. notify alert channels selected by urgency, concurrently with step 4
4. queue the remaining steps as pending follow-ups

The whole response is bounded by ``response_budget_secs``; a response that
takes longer than ``escalation_secs`` is escalated.  The handler never
raises: any failure comes back as an ``EmergencyResponse`` with
``status=failed`` carrying the elapsed time and error text.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

import aiohttp

from .logging_utils import get_logger
from .models import (
    EmergencyInformation,
    EmergencyResponse,
    EmergencyUrgency,
    ResponseAction,
    ResponseAnalysis,
    ResponseStatus,
)

log = get_logger("emergency")

DEFAULT_HISTORY_LIMIT = 500


# ============================================================================
# Protocols
# ============================================================================


@dataclass
class ProtocolStep:
    order: int
    action: str
    description: str
    timeout_secs: float
    required: bool = True
    parameters: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ResponseProtocol:
    id: str
    steps: List[ProtocolStep]
    timeout_secs: float = 30.0

    @property
    def immediate_steps(self) -> List[ProtocolStep]:
        return [s for s in self.steps if s.order <= 2 and s.required]

    @property
    def follow_up_steps(self) -> List[ProtocolStep]:
        return [s for s in self.steps if s.order > 2]


def default_protocols() -> Dict[str, ResponseProtocol]:
    return {
        "market_crisis": ResponseProtocol(
            id="market_crisis",
            steps=[
                ProtocolStep(1, "assess_severity", "Assess crisis severity and market impact", 5),
                ProtocolStep(
                    2,
                    "notify_stakeholders",
                    "Notify relevant stakeholders and systems",
                    10,
                    parameters={"urgency": "high"},
                ),
                ProtocolStep(
                    3,
                    "activate_safeguards",
                    "Activate automated trading safeguards",
                    15,
                    required=False,
                    parameters={"mode": "conservative"},
                ),
            ],
        ),
        "monetary_policy": ResponseProtocol(
            id="monetary_policy",
            steps=[
                ProtocolStep(1, "parse_policy_change", "Parse and categorize policy change", 8),
                ProtocolStep(
                    2,
                    "calculate_impact",
                    "Calculate expected market impact",
                    12,
                    parameters={"models": ["yield_curve", "fx_impact"]},
                ),
                ProtocolStep(
                    3,
                    "update_positions",
                    "Update position recommendations",
                    10,
                    required=False,
                    parameters={"auto_execute": False},
                ),
            ],
        ),
        "default": ResponseProtocol(
            id="default",
            steps=[
                ProtocolStep(1, "assess_situation", "Assess emergency situation", 10),
                ProtocolStep(2, "notify", "Send notifications", 15),
            ],
        ),
    }


# A step executor performs one protocol step and returns result parameters.
StepExecutor = Callable[[ProtocolStep, EmergencyInformation], Awaitable[Dict[str, Any]]]


async def _record_step(step: ProtocolStep, emergency: EmergencyInformation) -> Dict[str, Any]:
    return {"emergency_id": emergency.id, "step": step.action}


# ============================================================================
# Alert channels
# ============================================================================


def notification_message(emergency: EmergencyInformation) -> str:
    c = emergency.classification
    return (
        f"EMERGENCY ALERT: {c.category.upper()} - {c.urgency_level.value.upper()} "
        f"urgency. {emergency.content[:200]}"
    )


class AlertChannel(ABC):
    """Destination for emergency notifications.

    ``priority`` orders channels by how disruptive they are: 1 is paged
    for high urgency and above, 4 receives everything.
    """

    name: str = "channel"
    priority: int = 4
    active: bool = True

    @abstractmethod
    async def send(self, emergency: EmergencyInformation, message: str) -> None:
        ...


class LogAlertChannel(AlertChannel):
    """Structured log record per emergency. Always configured."""

    name = "log"
    priority = 4

    async def send(self, emergency: EmergencyInformation, message: str) -> None:
        log.warning(
            f"emergency_alert id={emergency.id} "
            f"category={emergency.classification.category} "
            f"urgency={emergency.classification.urgency_level.value} "
            f"source={emergency.source_id}",
            extra={"alert_message": message},
        )


class WebhookAlertChannel(AlertChannel):
    """POSTs a JSON payload to a webhook URL."""

    name = "webhook"
    priority = 1

    def __init__(
        self,
        url: str,
        session: Optional[aiohttp.ClientSession] = None,
        timeout_secs: float = 5.0,
    ) -> None:
        self.url = url
        self._session = session
        self._timeout = aiohttp.ClientTimeout(total=timeout_secs)

    async def send(self, emergency: EmergencyInformation, message: str) -> None:
        c = emergency.classification
        payload = {
            "type": "emergency",
            "id": emergency.id,
            "urgency": c.urgency_level.value,
            "category": c.category,
            "confidence": c.confidence,
            "source": emergency.source_id,
            "instruments": emergency.affected_instruments,
            "message": message,
        }
        if self._session is not None:
            await self._post(self._session, payload)
            return
        async with aiohttp.ClientSession(timeout=self._timeout) as session:
            await self._post(session, payload)

    async def _post(self, session: aiohttp.ClientSession, payload: Dict[str, Any]) -> None:
        async with session.post(self.url, json=payload) as resp:
            if resp.status >= 400:
                raise RuntimeError(f"webhook failed status={resp.status}")


def select_channels(
    channels: Iterable[AlertChannel], urgency: EmergencyUrgency
) -> List[AlertChannel]:
    active = [c for c in channels if c.active]
    if urgency == EmergencyUrgency.CRITICAL:
        return active
    limit = {EmergencyUrgency.HIGH: 2, EmergencyUrgency.MEDIUM: 3}.get(urgency, 4)
    return [c for c in active if c.priority <= limit]


# ============================================================================
# Handler
# ============================================================================


class EmergencyHandler:
    def __init__(
        self,
        channels: Optional[List[AlertChannel]] = None,
        protocols: Optional[Dict[str, ResponseProtocol]] = None,
        step_executor: Optional[StepExecutor] = None,
        response_budget_secs: float = 30.0,
        escalation_secs: float = 15.0,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
    ) -> None:
        self.channels: List[AlertChannel] = list(channels or [LogAlertChannel()])
        self.protocols = protocols or default_protocols()
        self.step_executor = step_executor or _record_step
        self.response_budget_secs = response_budget_secs
        self.escalation_secs = escalation_secs
        self.history_limit = max(1, int(history_limit))
        # Both keyed by emergency id, least recently handled first
        self.history: "OrderedDict[str, List[EmergencyResponse]]" = OrderedDict()
        self._emergencies: "OrderedDict[str, EmergencyInformation]" = OrderedDict()

    def _remember(
        self, emergency: EmergencyInformation, response: EmergencyResponse
    ) -> None:
        self._emergencies.move_to_end(emergency.id)
        self.history.setdefault(emergency.id, []).append(response)
        self.history.move_to_end(emergency.id)
        while len(self.history) > self.history_limit:
            evicted, _ = self.history.popitem(last=False)
            self._emergencies.pop(evicted, None)

    @classmethod
    def with_webhook(cls, url: str, **kwargs: Any) -> "EmergencyHandler":
        channels: List[AlertChannel] = [LogAlertChannel()]
        if url:
            channels.append(WebhookAlertChannel(url))
        return cls(channels=channels, **kwargs)

    def select_protocol(self, emergency: EmergencyInformation) -> ResponseProtocol:
        return (
            self.protocols.get(emergency.classification.category)
            or self.protocols.get("market_crisis")
            or default_protocols()["default"]
        )

    async def _execute_step(
        self, step: ProtocolStep, emergency: EmergencyInformation
    ) -> ResponseAction:
        start = time.perf_counter()
        try:
            result = await asyncio.wait_for(
                self.step_executor(step, emergency), timeout=step.timeout_secs
            )
            status, error = "completed", None
        except asyncio.TimeoutError:
            result, status, error = {}, "failed", f"timed out after {step.timeout_secs}s"
        except Exception as e:
            result, status, error = {}, "failed", str(e) or e.__class__.__name__
        if error:
            log.warning(
                f"emergency_step_failed emergency={emergency.id} step={step.action} "
                f"err={error}"
            )
        return ResponseAction(
            action=step.action,
            description=step.description,
            status=status,
            execution_time_ms=(time.perf_counter() - start) * 1000,
            parameters={**step.parameters, **(result or {})},
            error=error,
        )

    async def execute_immediate_actions(
        self, emergency: EmergencyInformation, protocol: ResponseProtocol
    ) -> List[ResponseAction]:
        actions = []
        for step in sorted(protocol.immediate_steps, key=lambda s: s.order):
            actions.append(await self._execute_step(step, emergency))
        return actions

    @staticmethod
    def prepare_follow_up_actions(
        emergency: EmergencyInformation, protocol: ResponseProtocol
    ) -> List[ResponseAction]:
        return [
            ResponseAction(
                action=step.action,
                description=step.description,
                status="pending",
                execution_time_ms=step.timeout_secs * 1000,
                parameters={**step.parameters, "emergency_id": emergency.id},
            )
            for step in protocol.follow_up_steps
        ]

    async def send_notifications(
        self, emergency: EmergencyInformation
    ) -> Tuple[List[str], List[str]]:
        """Notify the channels selected by urgency; return (sent, failed) names."""
        selected = select_channels(self.channels, emergency.classification.urgency_level)
        message = notification_message(emergency)
        outcomes = await asyncio.gather(
            *(c.send(emergency, message) for c in selected), return_exceptions=True
        )
        sent, failed = [], []
        for channel, outcome in zip(selected, outcomes):
            if isinstance(outcome, BaseException):
                failed.append(channel.name)
                log.warning(
                    f"emergency_notification_failed channel={channel.name} "
                    f"emergency={emergency.id} err={outcome}"
                )
            else:
                sent.append(channel.name)
        return sent, failed

    async def _respond(
        self, emergency: EmergencyInformation, response_id: str, start: float
    ) -> EmergencyResponse:
        protocol = self.select_protocol(emergency)
        notify = asyncio.ensure_future(self.send_notifications(emergency))
        try:
            immediate = await self.execute_immediate_actions(emergency, protocol)
            follow_ups = self.prepare_follow_up_actions(emergency, protocol)
            sent, failed = await notify
        finally:
            if not notify.done():
                notify.cancel()
        return EmergencyResponse(
            id=response_id,
            emergency_id=emergency.id,
            protocol=protocol.id,
            actions=[*immediate, *follow_ups],
            status=ResponseStatus.COMPLETED,
            response_time_ms=(time.perf_counter() - start) * 1000,
            notified=sent,
            notification_failures=failed,
        )

    async def handle_emergency_information(
        self, emergency: EmergencyInformation
    ) -> EmergencyResponse:
        start = time.perf_counter()
        response_id = f"emergency_response_{uuid.uuid4().hex[:12]}"
        try:
            response = await asyncio.wait_for(
                self._respond(emergency, response_id, start),
                timeout=self.response_budget_secs,
            )
        except asyncio.TimeoutError:
            protocol = self.select_protocol(emergency)
            response = EmergencyResponse(
                id=response_id,
                emergency_id=emergency.id,
                protocol=protocol.id,
                actions=self.prepare_follow_up_actions(emergency, protocol),
                status=ResponseStatus.EXECUTING,
                response_time_ms=(time.perf_counter() - start) * 1000,
            )
        except Exception as e:
            elapsed = (time.perf_counter() - start) * 1000
            log.warning(
                f"emergency_response_failed emergency={emergency.id} "
                f"elapsed_ms={elapsed:.1f} err={e.__class__.__name__}: {e}"
            )
            response = EmergencyResponse(
                id=response_id,
                emergency_id=emergency.id,
                protocol="error",
                actions=[],
                status=ResponseStatus.FAILED,
                response_time_ms=elapsed,
                error=str(e) or e.__class__.__name__,
            )

        if response.status != ResponseStatus.FAILED and (
            response.response_time_ms > self.escalation_secs * 1000
        ):
            response.escalated = True
            log.error(
                f"emergency_escalated emergency={emergency.id} "
                f"response_ms={response.response_time_ms:.0f} "
                f"limit_ms={self.escalation_secs * 1000:.0f}"
            )
        self._remember(emergency, response)
        log.info(
            f"emergency_handled emergency={emergency.id} status={response.status.value} "
            f"actions={len(response.actions)} response_ms={response.response_time_ms:.1f}"
        )
        return response

    async def handle_many(
        self, emergencies: Iterable[EmergencyInformation]
    ) -> List[EmergencyResponse]:
        """Handle several emergencies concurrently; one failing never blocks another."""
        emergencies = list(emergencies)
        outcomes = await asyncio.gather(
            *(self.handle_emergency_information(e) for e in emergencies),
            return_exceptions=True,
        )
        responses = []
        for emergency, outcome in zip(emergencies, outcomes):
            if isinstance(outcome, BaseException):
                log.warning(f"emergency_handler_crashed emergency={emergency.id} err={outcome}")
                responses.append(
                    EmergencyResponse(
                        id=f"emergency_response_{uuid.uuid4().hex[:12]}",
                        emergency_id=emergency.id,
                        protocol="error",
                        actions=[],
                        status=ResponseStatus.FAILED,
                        response_time_ms=0.0,
                        error=str(outcome) or outcome.__class__.__name__,
                    )
                )
            else:
                responses.append(outcome)
        return responses

    # ------------------------------------------------------------------
    # Post-hoc analysis
    # ------------------------------------------------------------------

    def analyze_emergency_response(self, response: EmergencyResponse) -> ResponseAnalysis:
        emergency = self._emergencies.get(response.emergency_id)
        if emergency is None:
            raise KeyError(f"unknown emergency {response.emergency_id}")

        budget_ms = self.response_budget_secs * 1000
        executed = [a for a in response.actions if a.status != "pending"]
        completed = sum(1 for a in executed if a.status == "completed")
        failed = sum(1 for a in executed if a.status == "failed")
        total = len(response.actions)

        if total:
            action_eff = sum(1 for a in response.actions if a.status == "completed") / total
            time_eff = 1.0 if response.response_time_ms <= budget_ms else 0.5
            effectiveness = round((action_eff * 0.7 + time_eff * 0.3) * 100)
        else:
            effectiveness = 0

        rt = response.response_time_ms
        if rt <= 10_000:
            timeliness = 100
        elif rt <= 20_000:
            timeliness = 85
        elif rt <= 30_000:
            timeliness = 70
        else:
            timeliness = 50
        accuracy = round(completed / len(executed) * 100) if executed else 0

        improvements = []
        if rt > budget_ms:
            improvements.append("Reduce protocol processing time")
        if failed:
            improvements.append("Add retries for failed protocol steps")
        if not total:
            improvements.append("Ensure protocols generate response actions")

        critical = emergency.classification.urgency_level == EmergencyUrgency.CRITICAL
        lessons = []
        if rt <= self.escalation_secs * 1000:
            lessons.append("Responded before escalation threshold")
        if executed and not failed:
            lessons.append("All immediate steps completed")
        if critical and rt <= budget_ms:
            lessons.append("Critical emergency handled within time budget")

        next_actions = [
            "Monitor market reaction for 30 minutes post-emergency",
            "Update risk assessment based on emergency outcome",
        ]
        next_actions.extend(a.description for a in response.actions if a.status == "pending")
        if critical:
            next_actions.append("Run post-emergency review within 24 hours")

        return ResponseAnalysis(
            response_id=response.id,
            effectiveness=effectiveness,
            timeliness=timeliness,
            accuracy=accuracy,
            improvements=improvements,
            lessons_learned=lessons,
            next_actions=next_actions,
        )
