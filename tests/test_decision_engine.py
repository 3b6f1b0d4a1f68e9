"""决策引擎单元测试。"""

import pytest

from app.models.schemas import FraudFlag
from app.services.decision_engine import decide
from app.services.risk_config import RiskConfig
from app.services.state_machine import APPROVED, MANUAL_REVIEW, REJECTED


def _flag(rule: str, weight: int, hard: bool = False) -> FraudFlag:
    return FraudFlag(rule=rule, weight=weight, description=f"{rule} triggered", hard_override=hard)


@pytest.fixture
def config():
    return RiskConfig(approve_below=10, reject_at=70)


class TestDecide:
    """decide 单元测试。"""

    def test_no_flags_approved(self, config):
        decision = decide([], config)
        assert decision.status == APPROVED
        assert decision.score == 0
        assert decision.validation_errors == []

    def test_low_score_approved(self, config):
        decision = decide([_flag("MISSING_EXIF", 5)], config)
        assert decision.status == APPROVED
        assert decision.score == 5

    def test_boundary_approve_below_goes_to_review(self, config):
        """score == approve_below → manual_review。"""
        decision = decide([_flag("MISSING_EXIF", 5), _flag("OTHER", 5)], config)
        assert decision.score == 10
        assert decision.status == MANUAL_REVIEW

    def test_mid_score_manual_review(self, config):
        decision = decide([_flag("AMOUNT_MISMATCH", 40)], config)
        assert decision.status == MANUAL_REVIEW
        assert decision.validation_errors == []

    def test_boundary_reject_at_rejected(self, config):
        """score == reject_at → rejected。"""
        decision = decide([_flag("A", 40), _flag("B", 30)], config)
        assert decision.score == 70
        assert decision.status == REJECTED

    def test_rejection_lists_descriptions(self, config):
        flags = [_flag("AMOUNT_MISMATCH", 40), _flag("VELOCITY_EXCEEDED", 40)]
        decision = decide(flags, config)
        assert decision.status == REJECTED
        assert decision.validation_errors == [
            "AMOUNT_MISMATCH triggered", "VELOCITY_EXCEEDED triggered",
        ]

    def test_hard_override_never_approved(self, config):
        """硬性规则命中时即使分数很低也不会自动通过。"""
        decision = decide([_flag("LOW_OCR_CONFIDENCE", 0, hard=True)], config)
        assert decision.status == MANUAL_REVIEW

    def test_hard_override_can_still_reject(self, config):
        flags = [_flag("DUPLICATE_IMAGE", 50, hard=True), _flag("AMOUNT_MISMATCH", 40)]
        assert decide(flags, config).status == REJECTED

    def test_flags_preserved_in_order(self, config):
        flags = [_flag("B", 1), _flag("A", 2)]
        assert [f.rule for f in decide(flags, config).flags] == ["B", "A"]

    def test_custom_thresholds(self):
        config = RiskConfig(approve_below=50, reject_at=90)
        assert decide([_flag("AMOUNT_MISMATCH", 40)], config).status == APPROVED
