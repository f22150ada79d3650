"""
errors.py — Failure taxonomy shared by the gateway, the analysis stages,
the credit gate and the generation orchestrator.

None of these are retried automatically. Anything with needs_credential=True
should send the user back to credential configuration instead of showing a
generic failure.
"""

from __future__ import annotations


class VisualLabError(Exception):
    """Root of every error raised by visual_lab."""

    needs_credential = False


# ── Gateway ───────────────────────────────────────────────────────────────────

class GatewayError(VisualLabError):
    """The model call did not produce a usable result."""


class GatewayUnavailable(GatewayError):
    """Network failure, timeout, or the upstream service rejected the call."""


class Unauthorized(GatewayError):
    """Missing or invalid API key."""

    needs_credential = True


class SchemaViolation(GatewayError):
    """The response body did not parse into the expected structure."""


# ── Pipeline stages ───────────────────────────────────────────────────────────

class AnalysisFailed(VisualLabError):
    """A decode / analyze / fuse stage could not produce its output."""


# ── Orchestration ─────────────────────────────────────────────────────────────

class CredentialRequired(VisualLabError):
    """The selected model tier needs a user-supplied credential and none is set."""

    needs_credential = True


class InsufficientCredit(VisualLabError):
    """The user cannot pay for another render."""

    def __init__(self, user_id: str, balance: int, cost: int = 1) -> None:
        super().__init__(
            f"user {user_id} has {balance} credit(s) available, render costs {cost}"
        )
        self.user_id = user_id
        self.balance = balance
        self.cost = cost


class AttemptInFlight(VisualLabError):
    """A render for this card is already running."""


class UnknownCard(VisualLabError):
    """No Final Prompt with this id in the current plan."""


class ImageMissing(GatewayError):
    """The render call returned no inline image."""


# ── Store ─────────────────────────────────────────────────────────────────────

class UserNotFound(VisualLabError):
    """No user with this id in the ledger."""
