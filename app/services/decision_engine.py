"""决策引擎：将风险标记汇总为分数并映射为处理结果。"""

from app.models.schemas import Decision, FraudFlag
from app.services.risk_config import RiskConfig
from app.services.state_machine import APPROVED, MANUAL_REVIEW, REJECTED


def decide(flags: list[FraudFlag], config: RiskConfig) -> Decision:
    """
    分数 = 命中规则权重之和。

    - score < approve_below → approved（存在硬性规则时升级为 manual_review）
    - approve_below <= score < reject_at → manual_review
    - score >= reject_at → rejected，validation_errors 为命中规则的描述
    """
    score = sum(f.weight for f in flags)

    if score >= config.reject_at:
        return Decision(
            status=REJECTED,
            score=score,
            flags=list(flags),
            validation_errors=[f.description for f in flags],
        )

    if score >= config.approve_below or any(f.hard_override for f in flags):
        return Decision(status=MANUAL_REVIEW, score=score, flags=list(flags))

    return Decision(status=APPROVED, score=score, flags=list(flags))
