"""Risk scoring and time-boxed approval of tool invocations.

One ``ApprovalEngine`` is owned per process (or per tenant) and passed by
reference to whatever needs approval checks. All writes to the pending map
happen on the owning event loop; readers receive copies.

Request lifecycle::

    pending -> approved | denied | expired

Terminal requests leave the pending map and are kept in a bounded audit log,
so resolving them again reports ``AlreadyResolved`` instead of overwriting.
"""

from __future__ import annotations

import asyncio
import inspect
import uuid
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import TypeVar

from agent_router.agent.registry import ToolRegistry
from agent_router.config import ApprovalConfig
from agent_router.errors import (
    AlreadyResolved,
    ApprovalDenied,
    ApprovalExpired,
    ApprovalNotFound,
    ConfigurationError,
    RequesterMismatch,
    UnknownToolError,
)
from agent_router.obs.logging import get_logger
from agent_router.types import (
    ApprovalAuditEntry,
    ApprovalRequest,
    ApprovalResponse,
    ApprovalStatus,
    RiskLevel,
    ToolInvocation,
)

logger = get_logger(name=__name__)

T = TypeVar("T")

Decision = ApprovalStatus | str
DecisionChannel = Callable[[ApprovalRequest], Awaitable[Decision] | Decision]

# Always escalated to critical, whatever tool carries them.
CRITICAL_OPERATIONS = frozenset(
    {
        "lock.unlock",
        "lock.open",
        "alarm_control_panel.disarm",
        "garage_door.open",
    }
)

_OPERATION_REASONS = {
    "lock.unlock": "CRITICAL: Unlocking door {entity} poses a security risk",
    "lock.open": "CRITICAL: Opening lock {entity} poses a security risk",
    "alarm_control_panel.disarm": "CRITICAL: Disarming security system poses a security risk",
    "garage_door.open": "CRITICAL: Opening garage {entity} poses a security risk",
    "climate.turn_off": "WARNING: Turning off climate control may be unsafe in extreme weather",
    "cover.open": "WARNING: Opening coverings {entity} may expose your home",
}

_TOOL_REASONS = {
    "code_interpreter": "HIGH RISK: Executing arbitrary code requires approval",
}

_LEVEL_REASONS = {
    RiskLevel.CRITICAL: "CRITICAL RISK: This action could compromise security or cause irreversible damage",
    RiskLevel.HIGH: "HIGH RISK: This action could have significant consequences",
    RiskLevel.MEDIUM: "MODERATE RISK: This action changes state but does not require confirmation",
    RiskLevel.LOW: "This is a safe operation",
}


class ApprovalEngine:
    def __init__(
        self,
        registry: ToolRegistry,
        config: ApprovalConfig | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
        audit_limit: int = 1000,
    ) -> None:
        self._registry = registry
        self._config = config or ApprovalConfig()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._audit_limit = audit_limit
        self._pending: dict[str, ApprovalRequest] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._waiters: dict[str, asyncio.Future[ApprovalStatus]] = {}
        self._audit: OrderedDict[str, ApprovalAuditEntry] = OrderedDict()

        unknown = sorted(name for name in self._config.risk_overrides if not registry.has_tool(name))
        if unknown:
            raise ConfigurationError(
                "Risk overrides reference unknown tools: " + ", ".join(unknown),
                unknown=unknown,
            )

    @property
    def ttl_seconds(self) -> float:
        return self._config.ttl_seconds

    # Risk assessment

    def risk_level(self, invocation: ToolInvocation) -> RiskLevel:
        operation = invocation.operation
        if operation in CRITICAL_OPERATIONS:
            return RiskLevel.CRITICAL

        try:
            descriptor = self._registry.describe_tool(invocation.tool_name)
        except UnknownToolError:
            return RiskLevel.MEDIUM

        level = self._config.risk_overrides.get(descriptor.name, descriptor.risk_level)
        if descriptor.dangerous_operations:
            if operation in descriptor.dangerous_operations:
                return level if level.at_least(RiskLevel.HIGH) else RiskLevel.HIGH
            return RiskLevel.LOW
        return level

    def requires_approval(self, invocation: ToolInvocation) -> bool:
        return self.risk_level(invocation).at_least(RiskLevel.HIGH)

    def risk_reason(self, invocation: ToolInvocation) -> str:
        level = self.risk_level(invocation)
        operation = invocation.operation
        if operation and level.at_least(RiskLevel.HIGH) and operation in _OPERATION_REASONS:
            entity = invocation.arguments.get("entity_id") or "unknown entity"
            return _OPERATION_REASONS[operation].format(entity=f'"{entity}"')
        if invocation.tool_name in _TOOL_REASONS and level.at_least(RiskLevel.HIGH):
            return _TOOL_REASONS[invocation.tool_name]
        return _LEVEL_REASONS[level]

    # Request lifecycle

    def create(
        self,
        invocation: ToolInvocation,
        requester_id: str,
        thread_id: str | None = None,
        *,
        owner: str | None = None,
    ) -> ApprovalRequest:
        now = self._clock()
        try:
            description = self._registry.describe_tool(invocation.tool_name).description
        except UnknownToolError:
            description = invocation.tool_name
        request = ApprovalRequest(
            id=f"approval_{uuid.uuid4().hex}",
            invocation=invocation,
            tool_description=description,
            risk_level=self.risk_level(invocation),
            risk_reason=self.risk_reason(invocation),
            requested_at=now,
            expires_at=now + timedelta(milliseconds=self._config.ttl_ms),
            requester_id=requester_id,
            thread_id=thread_id,
            owner=owner,
        )
        self._pending[request.id] = request

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is not None:
            self._waiters[request.id] = loop.create_future()
            self._timers[request.id] = loop.call_later(
                self._config.ttl_seconds, self._expire, request.id
            )

        logger.info(
            "approval_created",
            approval_id=request.id,
            tool_name=invocation.tool_name,
            risk_level=request.risk_level.value,
            requester_id=requester_id,
            expires_at=request.expires_at.isoformat(),
        )
        return replace(request)

    def resolve(
        self,
        approval_id: str,
        decision: Decision,
        requester_id: str,
        reason: str | None = None,
    ) -> ApprovalResponse:
        status = ApprovalStatus(decision)
        if status not in (ApprovalStatus.APPROVED, ApprovalStatus.DENIED):
            raise ValueError(f"Decision must be approved or denied, got {status.value}")

        self._expire_if_due(approval_id)
        request = self._pending.get(approval_id)
        if request is None:
            audited = self._audit.get(approval_id)
            if audited is not None:
                raise AlreadyResolved(approval_id, audited.status.value)
            raise ApprovalNotFound(approval_id)
        if request.requester_id != requester_id:
            logger.warning(
                "approval_requester_mismatch",
                approval_id=approval_id,
                expected=request.requester_id,
                got=requester_id,
            )
            raise RequesterMismatch(approval_id)

        responded_at = self._finalize(request, status, reason)
        return ApprovalResponse(
            id=approval_id,
            status=status,
            requester_id=requester_id,
            responded_at=responded_at,
            reason=reason,
        )

    def get(self, approval_id: str) -> ApprovalRequest | None:
        self._expire_if_due(approval_id)
        request = self._pending.get(approval_id)
        return replace(request) if request is not None else None

    def pending(self, requester_id: str | None = None) -> list[ApprovalRequest]:
        self.clear_expired()
        return [
            replace(request)
            for request in self._pending.values()
            if requester_id is None or request.requester_id == requester_id
        ]

    def audit_log(self, limit: int = 50) -> list[ApprovalAuditEntry]:
        return list(self._audit.values())[-limit:]

    def clear_expired(self) -> int:
        now = self._clock()
        overdue = [request for request in self._pending.values() if now >= request.expires_at]
        for request in overdue:
            self._finalize(request, ApprovalStatus.EXPIRED, None)
        return len(overdue)

    def cancel(self, approval_id: str, reason: str = "cancelled") -> bool:
        """Deny a pending request on behalf of its owner, releasing its timer."""
        request = self._pending.get(approval_id)
        if request is None:
            return False
        self._finalize(request, ApprovalStatus.DENIED, reason)
        return True

    def cancel_owned(self, owner: str, reason: str = "cancelled") -> int:
        owned = [request.id for request in self._pending.values() if request.owner == owner]
        for approval_id in owned:
            self.cancel(approval_id, reason)
        return len(owned)

    def close(self) -> None:
        """Tear down: deny everything still pending and drop timers."""
        for approval_id in list(self._pending):
            self.cancel(approval_id, reason="shutdown")

    async def wait(self, approval_id: str) -> ApprovalStatus:
        """Suspend until the request reaches a terminal status."""
        audited = self._audit.get(approval_id)
        if audited is not None:
            return audited.status
        waiter = self._waiters.get(approval_id)
        if waiter is None:
            if approval_id not in self._pending:
                raise ApprovalNotFound(approval_id)
            loop = asyncio.get_running_loop()
            waiter = loop.create_future()
            self._waiters[approval_id] = waiter
            if approval_id not in self._timers:
                remaining = (self._pending[approval_id].expires_at - self._clock()).total_seconds()
                self._timers[approval_id] = loop.call_later(max(0.0, remaining), self._expire, approval_id)
        return await waiter

    async def execute_with_approval(
        self,
        invocation: ToolInvocation,
        execute: Callable[[], Awaitable[T]],
        requester_id: str,
        on_need_approval: DecisionChannel | None = None,
        *,
        thread_id: str | None = None,
        owner: str | None = None,
        on_request: Callable[[ApprovalRequest], None] | None = None,
    ) -> T:
        """Run ``execute`` once the invocation is cleared.

        Invocations below ``high`` risk run immediately. Otherwise a request is
        created and the caller is suspended on its decision: either the
        ``on_need_approval`` channel or an external ``resolve`` call, whichever
        comes first, bounded by the request TTL. ``on_request`` is told about the
        new request before the caller suspends.
        """
        if not self.requires_approval(invocation):
            return await execute()

        request = self.create(invocation, requester_id, thread_id, owner=owner)
        if on_request is not None:
            on_request(request)
        try:
            status = await self._await_decision(request, on_need_approval)
        except asyncio.CancelledError:
            self.cancel(request.id)
            raise

        if status is ApprovalStatus.APPROVED:
            return await execute()
        if status is ApprovalStatus.EXPIRED:
            raise ApprovalExpired(invocation.tool_name, request.id)
        audited = self._audit.get(request.id)
        raise ApprovalDenied(invocation.tool_name, request.id, audited.reason if audited else None)

    async def _await_decision(
        self,
        request: ApprovalRequest,
        on_need_approval: DecisionChannel | None,
    ) -> ApprovalStatus:
        if on_need_approval is None:
            return await self.wait(request.id)

        async def _decide() -> ApprovalStatus:
            decision = on_need_approval(replace(request))
            if inspect.isawaitable(decision):
                decision = await decision
            status = ApprovalStatus(decision)
            if status not in (ApprovalStatus.APPROVED, ApprovalStatus.DENIED):
                raise ValueError(f"Decision channel returned {status.value}")
            return status

        waiter = asyncio.ensure_future(self.wait(request.id))
        decision_task = asyncio.ensure_future(_decide())
        try:
            await asyncio.wait({waiter, decision_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not decision_task.done():
                decision_task.cancel()

        if decision_task.done() and not decision_task.cancelled() and request.id in self._pending:
            exc = decision_task.exception()
            if exc is not None:
                logger.warning("approval_channel_failed", approval_id=request.id, error=str(exc))
                self._finalize(self._pending[request.id], ApprovalStatus.DENIED, "decision channel failed")
            else:
                self.resolve(request.id, decision_task.result(), request.requester_id)
        return await waiter

    # Internals

    def _expire(self, approval_id: str) -> None:
        self._timers.pop(approval_id, None)
        request = self._pending.get(approval_id)
        if request is not None:
            self._finalize(request, ApprovalStatus.EXPIRED, None)

    def _expire_if_due(self, approval_id: str) -> None:
        request = self._pending.get(approval_id)
        if request is not None and self._clock() >= request.expires_at:
            self._finalize(request, ApprovalStatus.EXPIRED, None)

    def _finalize(
        self,
        request: ApprovalRequest,
        status: ApprovalStatus,
        reason: str | None,
    ) -> datetime:
        responded_at = self._clock()
        request.status = status
        self._pending.pop(request.id, None)

        timer = self._timers.pop(request.id, None)
        if timer is not None:
            timer.cancel()
        waiter = self._waiters.pop(request.id, None)
        if waiter is not None and not waiter.done():
            waiter.set_result(status)

        self._audit[request.id] = ApprovalAuditEntry(
            id=request.id,
            tool_name=request.invocation.tool_name,
            parameters=dict(request.invocation.arguments),
            risk_level=request.risk_level,
            status=status,
            requested_at=request.requested_at,
            responded_at=responded_at,
            requester_id=request.requester_id,
            thread_id=request.thread_id,
            reason=reason,
        )
        while len(self._audit) > self._audit_limit:
            self._audit.popitem(last=False)

        log_event = "approval_expired" if status is ApprovalStatus.EXPIRED else "approval_resolved"
        logger.info(
            log_event,
            approval_id=request.id,
            tool_name=request.invocation.tool_name,
            status=status.value,
            reason=reason,
        )
        return responded_at
