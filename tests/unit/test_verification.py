"""
Unit tests for the OTP request/validate cycle and the verification flow.

Tests verify:
- Last-write-wins code requests
- Serialized validation
- Upfront flow transitions (EMAIL_ENTRY -> OTP_ENTRY -> FORM | NOT_QUALIFIED)
- Deferred flow holds the payload unmodified behind the overlay
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from eventreg.adapters.session.memory import InMemorySessionStore
from eventreg.domain.exceptions import (
    InvalidCode,
    InvalidEmail,
    InvalidTransition,
    QualificationDenied,
    RateLimited,
    SessionExpired,
)
from eventreg.domain.mode import resolve_mode
from eventreg.domain.models import (
    CodeRequest,
    EventConfig,
    OtpValidation,
    QualificationResult,
    VerifiedProfile,
)
from eventreg.domain.ports import FlowStep
from eventreg.domain.verification import (
    NO_PENDING_CODE,
    SUPERSEDED_CODE,
    OtpVerificationService,
    VerificationFlow,
)

QUALIFIED = resolve_mode(EventConfig(id="e1", registration_mode="qualified_verified"))
OPEN = resolve_mode(EventConfig(id="e1", registration_mode="open_verified"))


@pytest.fixture
def otp(gateway: AsyncMock, store: InMemorySessionStore) -> OtpVerificationService:
    return OtpVerificationService(gateway, store)


def denied() -> OtpValidation:
    return OtpValidation(
        verified=True,
        profile=VerifiedProfile(unicity_id="", email="b@y.com"),
        qualification=QualificationResult(is_qualified=False, message="Not on the list"),
    )


class TestRequestCode:
    @pytest.mark.asyncio
    async def test_email_is_normalized(self, otp: OtpVerificationService, gateway: AsyncMock) -> None:
        await otp.request_code("  A@X.com ", "e1", "D1")

        gateway.request_code.assert_awaited_once_with("a@x.com", "e1", "D1")
        assert otp.pending.email == "a@x.com"

    @pytest.mark.asyncio
    async def test_malformed_email_never_reaches_server(
        self, otp: OtpVerificationService, gateway: AsyncMock
    ) -> None:
        with pytest.raises(InvalidEmail):
            await otp.request_code("not-an-email", "e1")

        gateway.request_code.assert_not_awaited()
        assert otp.pending is None

    @pytest.mark.asyncio
    async def test_failed_request_leaves_nothing_pending(
        self, otp: OtpVerificationService, gateway: AsyncMock
    ) -> None:
        gateway.request_code.side_effect = RateLimited("Too many codes")

        with pytest.raises(RateLimited):
            await otp.request_code("a@x.com", "e1")

        assert otp.pending is None

    @pytest.mark.asyncio
    async def test_newest_request_wins(self, otp: OtpVerificationService, gateway: AsyncMock) -> None:
        await otp.request_code("a@x.com", "e1")
        await otp.request_code("b@y.com", "e1")

        with pytest.raises(SessionExpired, match=NO_PENDING_CODE):
            await otp.validate_code("a@x.com", "123456", "e1")

        await otp.validate_code("b@y.com", "123456", "e1")
        gateway.validate_code.assert_awaited_once_with("b@y.com", "123456", "e1")


class TestValidateCode:
    @pytest.mark.asyncio
    async def test_success_clears_pending(self, otp: OtpVerificationService) -> None:
        await otp.request_code("a@x.com", "e1")

        result = await otp.validate_code("a@x.com", " 123456 ", "e1")

        assert result.verified
        assert otp.pending is None

    @pytest.mark.asyncio
    async def test_wrong_code_keeps_pending(
        self, otp: OtpVerificationService, gateway: AsyncMock
    ) -> None:
        gateway.validate_code.return_value = OtpValidation(verified=False)
        await otp.request_code("a@x.com", "e1")

        with pytest.raises(InvalidCode):
            await otp.validate_code("a@x.com", "000000", "e1")

        assert otp.pending is not None

    @pytest.mark.asyncio
    async def test_expired_session_clears_pending(
        self, otp: OtpVerificationService, gateway: AsyncMock
    ) -> None:
        gateway.validate_code.side_effect = SessionExpired("expired")
        await otp.request_code("a@x.com", "e1")

        with pytest.raises(SessionExpired):
            await otp.validate_code("a@x.com", "123456", "e1")

        assert otp.pending is None

    @pytest.mark.asyncio
    async def test_code_superseded_mid_validation(
        self, otp: OtpVerificationService, gateway: AsyncMock
    ) -> None:
        """A resend while the old code is being checked wins."""

        async def resend_during_check(email: str, code: str, event_id: str) -> OtpValidation:
            await otp.request_code(email, event_id)
            return OtpValidation(verified=True)

        gateway.validate_code.side_effect = resend_during_check
        await otp.request_code("a@x.com", "e1")

        with pytest.raises(SessionExpired, match=SUPERSEDED_CODE):
            await otp.validate_code("a@x.com", "123456", "e1")

        assert otp.pending is not None
        assert otp.pending.generation == 2

    @pytest.mark.asyncio
    async def test_concurrent_validations_are_serialized(
        self, otp: OtpVerificationService, gateway: AsyncMock
    ) -> None:
        active = 0
        peak = 0

        async def slow_check(email: str, code: str, event_id: str) -> OtpValidation:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0)
            active -= 1
            return OtpValidation(verified=True)

        gateway.validate_code.side_effect = slow_check
        await otp.request_code("a@x.com", "e1")

        results = await asyncio.gather(
            otp.validate_code("a@x.com", "123456", "e1"),
            otp.validate_code("a@x.com", "123456", "e1"),
            return_exceptions=True,
        )

        assert peak == 1
        assert gateway.validate_code.await_count == 1
        assert isinstance(results[1], SessionExpired)

    def test_commit_records_normalized_email(
        self, otp: OtpVerificationService, store: InMemorySessionStore
    ) -> None:
        otp.commit("e1", "A@X.com")

        assert store.get_verified_email("e1") == "a@x.com"


class TestUpfrontFlow:
    @pytest.fixture
    def flow(self, otp: OtpVerificationService) -> VerificationFlow:
        return VerificationFlow("e1", QUALIFIED, otp)

    @pytest.mark.asyncio
    async def test_request_moves_to_otp_entry(
        self, flow: VerificationFlow, gateway: AsyncMock
    ) -> None:
        gateway.request_code.return_value = CodeRequest(accepted=True, dev_code="123456")

        step = await flow.verify_then_show_form("A@x.com", "D1")

        assert step is FlowStep.OTP_ENTRY
        assert flow.email == "a@x.com"
        assert flow.dev_code == "123456"

    @pytest.mark.asyncio
    async def test_qualified_code_shows_form(
        self, flow: VerificationFlow, store: InMemorySessionStore
    ) -> None:
        await flow.verify_then_show_form("a@x.com")

        step = await flow.confirm_code("123456")

        assert step is FlowStep.FORM
        assert flow.verified_email == "a@x.com"
        assert store.get_verified_email("e1") == "a@x.com"

    @pytest.mark.asyncio
    async def test_not_qualified_is_terminal_for_identity(
        self, flow: VerificationFlow, gateway: AsyncMock, store: InMemorySessionStore
    ) -> None:
        gateway.validate_code.return_value = denied()
        await flow.verify_then_show_form("b@y.com")

        step = await flow.confirm_code("123456")

        assert step is FlowStep.NOT_QUALIFIED
        assert flow.qualification.message == "Not on the list"
        assert store.get_verified_email("e1") is None
        with pytest.raises(InvalidTransition):
            await flow.verify_then_show_form("b@y.com")

    @pytest.mark.asyncio
    async def test_change_email_leaves_not_qualified(
        self, flow: VerificationFlow, gateway: AsyncMock
    ) -> None:
        gateway.validate_code.return_value = denied()
        await flow.verify_then_show_form("b@y.com")
        await flow.confirm_code("123456")

        assert flow.change_email() is FlowStep.EMAIL_ENTRY
        assert flow.qualification is None

    @pytest.mark.asyncio
    async def test_wrong_code_stays_on_otp_entry(
        self, flow: VerificationFlow, gateway: AsyncMock
    ) -> None:
        gateway.validate_code.return_value = OtpValidation(verified=False)
        await flow.verify_then_show_form("a@x.com")

        with pytest.raises(InvalidCode):
            await flow.confirm_code("000000")

        assert flow.step is FlowStep.OTP_ENTRY

    @pytest.mark.asyncio
    async def test_expired_code_sets_notice(
        self, flow: VerificationFlow, gateway: AsyncMock
    ) -> None:
        gateway.validate_code.side_effect = SessionExpired("Code expired")
        await flow.verify_then_show_form("a@x.com")

        with pytest.raises(SessionExpired):
            await flow.confirm_code("123456")

        assert flow.notice == "Code expired"

    @pytest.mark.asyncio
    async def test_confirm_without_request_is_rejected(self, flow: VerificationFlow) -> None:
        with pytest.raises(InvalidTransition):
            await flow.confirm_code("123456")

    @pytest.mark.asyncio
    async def test_resend_keeps_otp_entry(self, flow: VerificationFlow, gateway: AsyncMock) -> None:
        await flow.verify_then_show_form("a@x.com")

        assert await flow.resend() is FlowStep.OTP_ENTRY
        assert gateway.request_code.await_count == 2

    def test_reset_drops_identity(self, flow: VerificationFlow) -> None:
        flow.establish(VerifiedProfile(unicity_id="U1", email="a@x.com"))

        flow.reset("Please verify again.")

        assert flow.step is FlowStep.EMAIL_ENTRY
        assert flow.identity is None
        assert flow.notice == "Please verify again."


class TestDeferredFlow:
    @pytest.fixture
    def flow(self, otp: OtpVerificationService) -> VerificationFlow:
        flow = VerificationFlow("e1", OPEN, otp)
        flow.show_form()
        return flow

    @pytest.mark.asyncio
    async def test_payload_released_unmodified(self, flow: VerificationFlow) -> None:
        payload = {"email": "a@x.com", "firstName": "Ada", "formData": {"track": "B"}}

        await flow.verify_during_submit("a@x.com", payload)
        payload["formData"]["track"] = "changed"
        released = await flow.confirm_overlay_code("123456")

        assert released == {"email": "a@x.com", "firstName": "Ada", "formData": {"track": "B"}}
        assert not flow.overlay_open
        assert flow.verified_email == "a@x.com"

    @pytest.mark.asyncio
    async def test_wrong_code_keeps_overlay_open(
        self, flow: VerificationFlow, gateway: AsyncMock
    ) -> None:
        gateway.validate_code.return_value = OtpValidation(verified=False)
        await flow.verify_during_submit("a@x.com", {"email": "a@x.com"})

        with pytest.raises(InvalidCode):
            await flow.confirm_overlay_code("000000")

        assert flow.overlay_open
        assert flow.held_payload == {"email": "a@x.com"}

    @pytest.mark.asyncio
    async def test_expired_code_closes_overlay(
        self, flow: VerificationFlow, gateway: AsyncMock
    ) -> None:
        gateway.validate_code.side_effect = SessionExpired("Code expired")
        await flow.verify_during_submit("a@x.com", {"email": "a@x.com"})

        with pytest.raises(SessionExpired):
            await flow.confirm_overlay_code("123456")

        assert not flow.overlay_open
        assert flow.held_payload is None

    @pytest.mark.asyncio
    async def test_ineligible_identity_discards_payload(
        self, otp: OtpVerificationService, gateway: AsyncMock
    ) -> None:
        flow = VerificationFlow("e1", QUALIFIED, otp)
        flow.show_form()
        gateway.validate_code.return_value = denied()
        await flow.verify_during_submit("b@y.com", {"email": "b@y.com"})

        with pytest.raises(QualificationDenied):
            await flow.confirm_overlay_code("123456")

        assert flow.step is FlowStep.NOT_QUALIFIED
        assert flow.held_payload is None

    @pytest.mark.asyncio
    async def test_cancel_abandons_code(self, flow: VerificationFlow, otp: OtpVerificationService) -> None:
        await flow.verify_during_submit("a@x.com", {"email": "a@x.com"})

        flow.cancel_overlay()

        assert not flow.overlay_open
        assert otp.pending is None
        with pytest.raises(InvalidTransition):
            await flow.confirm_overlay_code("123456")
