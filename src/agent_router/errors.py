"""Exception taxonomy shared by routing, guardrails, approval and the runner."""

from __future__ import annotations

from typing import Any


class RouterError(Exception):
    """Base class for every failure surfaced by the agent router."""

    kind = "router_error"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self._details = details

    def details(self) -> dict[str, Any]:
        return dict(self._details)


class ConfigurationError(RouterError):
    kind = "configuration_error"


class RegistryError(RouterError):
    """Raised when the static tool/specialist catalog is inconsistent."""

    kind = "registry_error"


class UnknownToolError(RouterError, KeyError):
    kind = "unknown_tool"

    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown tool: {name}", tool_name=name)
        self.name = name

    def __str__(self) -> str:
        return self.message


class GuardrailRejection(RouterError):
    """An input or output validator tripped."""

    kind = "guardrail_rejection"

    def __init__(self, validator: str, info: dict[str, Any], *, stage: str) -> None:
        message = str(info.get("error") or f"Guardrail {validator} rejected the {stage}")
        super().__init__(message, validator=validator, stage=stage, info=dict(info))
        self.validator = validator
        self.info = dict(info)
        self.stage = stage


class ApprovalError(RouterError):
    kind = "approval_error"


class ApprovalDenied(ApprovalError):
    kind = "approval_denied"

    def __init__(self, tool_name: str, approval_id: str, reason: str | None = None) -> None:
        super().__init__(
            f"Tool execution denied by user: {tool_name}",
            tool_name=tool_name,
            approval_id=approval_id,
            reason=reason,
        )
        self.tool_name = tool_name
        self.approval_id = approval_id


class ApprovalExpired(ApprovalError):
    kind = "approval_expired"

    def __init__(self, tool_name: str, approval_id: str) -> None:
        super().__init__(
            f"Approval request for {tool_name} expired before a decision was made",
            tool_name=tool_name,
            approval_id=approval_id,
        )
        self.tool_name = tool_name
        self.approval_id = approval_id


class ApprovalNotFound(ApprovalError):
    kind = "approval_not_found"

    def __init__(self, approval_id: str) -> None:
        super().__init__(f"Approval request not found: {approval_id}", approval_id=approval_id)


class AlreadyResolved(ApprovalError):
    kind = "approval_already_resolved"

    def __init__(self, approval_id: str, status: str) -> None:
        super().__init__(
            f"Approval request {approval_id} is already {status}",
            approval_id=approval_id,
            status=status,
        )
        self.status = status


class RequesterMismatch(ApprovalError):
    kind = "approval_requester_mismatch"

    def __init__(self, approval_id: str) -> None:
        super().__init__(
            "User ID mismatch - cannot resolve a request from a different user",
            approval_id=approval_id,
        )


class ToolExecutionError(RouterError):
    kind = "tool_execution_error"

    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(f"{tool_name} failed: {message}", tool_name=tool_name)
        self.tool_name = tool_name


class RoutingUnresolvedTool(RouterError):
    kind = "routing_unresolved_tool"

    def __init__(self, missing: list[str]) -> None:
        super().__init__(
            "No requested tool could be resolved: " + ", ".join(missing),
            missing=list(missing),
        )
        self.missing = list(missing)


class EmptyOutput(RouterError):
    kind = "empty_output"

    def __init__(self, agent: str) -> None:
        super().__init__(f"{agent} produced no final text", agent=agent)
