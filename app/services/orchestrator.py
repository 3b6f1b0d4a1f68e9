"""
审核编排器：驱动单条付款截图从 pending 到最终结果。

pending --claim--> processing --图片分析 / OCR / 风控规则 / 决策-->
approved | rejected | manual_review

- 认领（claim）是 status='pending' 上的 CAS，并发调用只有一个成功
- 图片分析和 OCR 在线程池中执行并受超时限制
- OCR 引擎异常、截图读取失败、超时属于临时故障：释放回 pending 并按
  RETRY_INTERVALS 退避；达到最大次数后强制转人工审核
- 审核通过与结算副作用在同一个 BEGIN IMMEDIATE 事务内提交
"""

import json
import logging
import os
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from datetime import datetime, timedelta

from app.database import get_db
from app.models.schemas import Decision, ExtractedProof, ImageFingerprint
from app.services import audit_log
from app.services.decision_engine import decide
from app.services.fraud_rules import RuleContext, evaluate, make_flag
from app.services.history_store import build_snapshot
from app.services.image_analyzer import ImageAnalysisError, analyze_image
from app.services.ocr_extractor import OcrEngineError, OcrExtractor, build_default_extractor
from app.services.order_service import row_to_order
from app.services.risk_config import RiskConfig, load_risk_config
from app.services.settlement_service import apply_approval
from app.services.state_machine import (
    APPROVED,
    MANUAL_REVIEW,
    PENDING,
    PROCESSING,
    REJECTED,
    transition,
)
from app.services.submission_service import ScreenshotStoreError, load_screenshot, row_to_submission

logger = logging.getLogger(__name__)

_TS_FORMAT = "%Y-%m-%d %H:%M:%S"

STEP_TIMEOUT_SECONDS = float(os.getenv("VERIFY_STEP_TIMEOUT_SECONDS", "30"))
CLAIM_LEASE_SECONDS = int(os.getenv("VERIFY_CLAIM_LEASE_SECONDS", "300"))

REASON_ORDER_NOT_FOUND = "order not found"
REASON_UNREADABLE_IMAGE = "unreadable image"
REASON_ORDER_FULFILLED = "payment order has already been fulfilled"


class TransientVerificationError(Exception):
    """可重试的临时故障（OCR 引擎、截图存储、步骤超时）。"""
    pass


def _now_str() -> str:
    return datetime.now().strftime(_TS_FORMAT)


class VerificationOrchestrator:
    """付款截图审核编排器。"""

    RETRY_INTERVALS = [5, 30, 60, 300, 1800]  # 秒

    def __init__(
        self,
        extractor: OcrExtractor | None = None,
        step_timeout: float = STEP_TIMEOUT_SECONDS,
        claim_lease_seconds: int = CLAIM_LEASE_SECONDS,
    ):
        self._extractor = extractor
        self.step_timeout = step_timeout
        self.claim_lease_seconds = claim_lease_seconds
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="verify")

    @property
    def extractor(self) -> OcrExtractor:
        if self._extractor is None:
            self._extractor = build_default_extractor()
        return self._extractor

    # ── 认领 ──────────────────────────────────────────────

    def claim(self, submission_id: int) -> bool:
        """CAS：pending → processing。返回是否认领成功。"""
        db = get_db()
        try:
            won = transition(db, submission_id, PENDING, PROCESSING, claimed_at=_now_str())
            db.commit()
        finally:
            db.close()
        if won:
            logger.info("认领提交记录: submission_id=%d", submission_id)
        return won

    def claim_next(self) -> int | None:
        """认领最早到期的 pending 提交记录，无可认领记录返回 None。"""
        db = get_db()
        try:
            rows = db.execute(
                """SELECT id FROM payment_submissions
                   WHERE status = ?
                     AND (next_attempt_at IS NULL OR next_attempt_at <= ?)
                   ORDER BY created_at, id
                   LIMIT 10""",
                (PENDING, _now_str()),
            ).fetchall()
        finally:
            db.close()

        for row in rows:
            if self.claim(row["id"]):
                return row["id"]
        return None

    def verify(self, submission_id: int) -> str | None:
        """认领并处理指定提交记录；认领失败返回 None。"""
        if not self.claim(submission_id):
            return None
        return self.process(submission_id)

    def run_pending(self, limit: int = 20) -> int:
        """依次认领并处理到期的 pending 提交记录，返回处理条数。"""
        handled = 0
        while handled < limit:
            submission_id = self.claim_next()
            if submission_id is None:
                break
            self.process(submission_id)
            handled += 1
        return handled

    # ── 处理 ──────────────────────────────────────────────

    def _run_step(self, fn, *args):
        future = self._executor.submit(fn, *args)
        try:
            return future.result(timeout=self.step_timeout)
        except FutureTimeoutError:
            future.cancel()
            raise TransientVerificationError(f"{getattr(fn, '__name__', 'step')} timed out")

    def process(self, submission_id: int) -> str | None:
        """
        处理一条已认领（processing）的提交记录。

        Returns:
            最终状态（approved / rejected / manual_review），
            释放回 pending 或状态已被他人改变时返回 None（或 pending）。
        """
        db = get_db()
        try:
            row = db.execute(
                "SELECT * FROM payment_submissions WHERE id = ?", (submission_id,)
            ).fetchone()
            order_row = None
            if row:
                order_row = db.execute(
                    "SELECT * FROM payment_orders WHERE order_id = ?", (row["order_id"],)
                ).fetchone()
        finally:
            db.close()

        if not row or row["status"] != PROCESSING:
            logger.warning("提交记录不处于 processing 状态，跳过: submission_id=%d", submission_id)
            return None

        submission = row_to_submission(row)
        config = load_risk_config()

        if not order_row:
            return self._finalize_rejected(submission, REASON_ORDER_NOT_FOUND, "order_invalid")

        order = row_to_order(order_row)
        fingerprint = None
        try:
            data = load_screenshot(submission.screenshot_ref)
            try:
                fingerprint = self._run_step(analyze_image, data)
            except ImageAnalysisError as e:
                logger.info("截图无法解析: submission_id=%d, error=%s", submission_id, e)
                return self._finalize_rejected(submission, REASON_UNREADABLE_IMAGE, "unreadable_image")
            self._save_fingerprint(submission.id, fingerprint)
            proof = self._run_step(self.extractor.extract, data)
        except (TransientVerificationError, OcrEngineError, ScreenshotStoreError) as e:
            return self._release(submission, config, str(e), fingerprint)

        now = datetime.now()
        history = build_snapshot(
            submission.id, submission.user_id, submission.created_at,
            fingerprint, proof, config.velocity_window_minutes, config.similar_lookback_days,
        )
        ctx = RuleContext(
            order=order,
            submission=submission,
            fingerprint=fingerprint,
            proof=proof,
            history=history,
            config=config,
            now=now,
        )
        flags = evaluate(ctx)
        decision = decide(flags, config)
        logger.info(
            "风控评分完成: submission_id=%d, score=%d, flags=%s, decision=%s",
            submission.id, decision.score, [f.rule for f in flags], decision.status,
        )
        return self._finalize(submission, fingerprint, proof, decision)

    # ── 持久化 ────────────────────────────────────────────

    def _save_fingerprint(self, submission_id: int, fingerprint: ImageFingerprint) -> None:
        """图片分析完成后立即落库哈希，OCR 失败退回 pending 期间仍参与重复截图比对。"""
        db = get_db()
        try:
            db.execute(
                """UPDATE payment_submissions
                   SET exact_hash = ?, perceptual_hash = ?, image_width = ?,
                       image_height = ?, has_exif = ?, updated_at = ?
                   WHERE id = ? AND status = ?""",
                (
                    fingerprint.exact_hash, fingerprint.perceptual_hash,
                    fingerprint.width, fingerprint.height,
                    1 if fingerprint.has_exif else 0, _now_str(),
                    submission_id, PROCESSING,
                ),
            )
            db.commit()
        finally:
            db.close()

    def _result_fields(
        self,
        fingerprint: ImageFingerprint | None,
        proof: ExtractedProof | None,
        decision: Decision,
    ) -> dict:
        fields = {
            "fraud_flags": audit_log.flags_to_json(decision.flags),
            "fraud_score": decision.score,
            "validation_errors": json.dumps(decision.validation_errors),
        }
        if fingerprint is not None:
            fields.update(
                exact_hash=fingerprint.exact_hash,
                perceptual_hash=fingerprint.perceptual_hash,
                image_width=fingerprint.width,
                image_height=fingerprint.height,
                has_exif=1 if fingerprint.has_exif else 0,
            )
        if proof is not None:
            fields.update(
                extracted_amount=proof.amount,
                reference_number=proof.reference_number,
                sender_name=proof.sender_name,
                receiver_name=proof.receiver_name,
                transaction_time=proof.transaction_time,
                ocr_confidence=proof.confidence,
                ocr_text=proof.raw_text,
            )
        return fields

    def _finalize(
        self,
        submission,
        fingerprint: ImageFingerprint | None,
        proof: ExtractedProof | None,
        decision: Decision,
        action: str | None = None,
    ) -> str | None:
        """在单个事务内写入结果、执行结算（通过时）并记录审核日志。"""
        status = decision.status
        actions = {APPROVED: "auto_approved", REJECTED: "auto_rejected", MANUAL_REVIEW: "escalated"}
        action = action or actions[status]
        notes = None

        db = get_db()
        try:
            db.execute("BEGIN IMMEDIATE")

            if status == APPROVED:
                order = db.execute(
                    "SELECT fulfilled, fulfilled_by FROM payment_orders WHERE order_id = ?",
                    (submission.order_id,),
                ).fetchone()
                if order and order["fulfilled"] and order["fulfilled_by"] != submission.id:
                    status = REJECTED
                    action = "order_already_fulfilled"
                    decision = Decision(
                        status=REJECTED,
                        score=decision.score,
                        flags=decision.flags,
                        validation_errors=decision.validation_errors + [REASON_ORDER_FULFILLED],
                    )

            fields = self._result_fields(fingerprint, proof, decision)
            if status in (APPROVED, REJECTED):
                fields.update(resolved_by="system", resolved_at=_now_str())

            won = transition(db, submission.id, PROCESSING, status, **fields)
            if not won:
                db.rollback()
                logger.warning(
                    "提交记录状态已被改变，放弃本次结果: submission_id=%d", submission.id
                )
                return None

            if status == APPROVED:
                apply_approval(db, submission.order_id, submission.id)

            if status == REJECTED:
                notes = "; ".join(decision.validation_errors)
            audit_log.record(
                db, submission.id, submission.user_id, action,
                decision.score, fields["fraud_flags"], notes=notes,
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info(
            "审核完成: submission_id=%d, status=%s, score=%d",
            submission.id, status, decision.score,
        )
        return status

    def _finalize_rejected(self, submission, reason: str, action: str) -> str | None:
        decision = Decision(status=REJECTED, score=0, flags=[], validation_errors=[reason])
        return self._finalize(submission, None, None, decision, action=action)

    def _release(
        self,
        submission,
        config: RiskConfig,
        error: str,
        fingerprint: ImageFingerprint | None = None,
    ) -> str | None:
        """
        临时故障处理：attempts + 1 后释放回 pending 等待退避重试；
        达到最大次数时强制转人工审核（附加 LOW_OCR_CONFIDENCE 标记）。
        """
        attempts = submission.attempts + 1

        if attempts >= config.max_attempts:
            flag = make_flag("LOW_OCR_CONFIDENCE", config, {"attempts": attempts, "error": error})
            decision = Decision(status=MANUAL_REVIEW, score=flag.weight, flags=[flag])
            logger.warning(
                "重试次数已用尽，转人工审核: submission_id=%d, attempts=%d, error=%s",
                submission.id, attempts, error,
            )
            db = get_db()
            try:
                db.execute("BEGIN IMMEDIATE")
                fields = self._result_fields(fingerprint, None, decision)
                won = transition(
                    db, submission.id, PROCESSING, MANUAL_REVIEW,
                    attempts=attempts, last_error=error, **fields,
                )
                if not won:
                    db.rollback()
                    return None
                audit_log.record(
                    db, submission.id, submission.user_id, "forced_review",
                    decision.score, fields["fraud_flags"], notes=error,
                )
                db.commit()
            finally:
                db.close()
            return MANUAL_REVIEW

        delay = self.RETRY_INTERVALS[min(attempts - 1, len(self.RETRY_INTERVALS) - 1)]
        next_attempt_at = (datetime.now() + timedelta(seconds=delay)).strftime(_TS_FORMAT)
        db = get_db()
        try:
            db.execute("BEGIN IMMEDIATE")
            won = transition(
                db, submission.id, PROCESSING, PENDING,
                attempts=attempts, next_attempt_at=next_attempt_at,
                claimed_at=None, last_error=error,
            )
            if not won:
                db.rollback()
                return None
            audit_log.record(
                db, submission.id, submission.user_id, "retry_scheduled", notes=error,
            )
            db.commit()
        finally:
            db.close()

        logger.warning(
            "临时故障，稍后重试: submission_id=%d, attempts=%d, delay=%ds, error=%s",
            submission.id, attempts, delay, error,
        )
        return PENDING

    # ── 租约回收 ──────────────────────────────────────────

    def recover_stale_claims(self) -> int:
        """回收认领超时（工作进程崩溃等）的 processing 记录，返回回收条数。"""
        cutoff = (datetime.now() - timedelta(seconds=self.claim_lease_seconds)).strftime(_TS_FORMAT)
        db = get_db()
        try:
            rows = db.execute(
                """SELECT * FROM payment_submissions
                   WHERE status = ? AND claimed_at IS NOT NULL AND claimed_at < ?""",
                (PROCESSING, cutoff),
            ).fetchall()
        finally:
            db.close()

        if not rows:
            return 0

        config = load_risk_config()
        recovered = 0
        for row in rows:
            if self._release(row_to_submission(row), config, "claim lease expired"):
                recovered += 1
        if recovered:
            logger.info("已回收超时认领: %d 条", recovered)
        return recovered

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)
