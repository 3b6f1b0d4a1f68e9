"""
管理后台路由：认证（登录）、仪表盘、审核队列、人工裁决、风控配置、系统设置。
"""

import asyncio
import csv
import io
import json
import math
from datetime import date

from fastapi import APIRouter, Depends, File, Query, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from app.database import get_db
from app.services import audit_log
from app.services.adjudication_service import AdjudicationService, DECISION_APPROVE, DECISION_REJECT
from app.services.auth import authenticate, get_current_admin, hash_password, verify_password
from app.services.order_service import format_minor
from app.services.platform_config import (
    PlatformConfigError,
    get_settings_status,
    save_ocr_credentials,
    save_receiving_account,
    upload_qrcode,
)
from app.services.risk_config import RiskConfigError, load_risk_config, update_risk_config
from app.services.settlement_notifier import SettlementNotifier
from app.services.state_machine import MANUAL_REVIEW, STATUSES, InvalidStateError

router = APIRouter(prefix="/v1/admin")


class LoginRequest(BaseModel):
    username: str
    password: str


@router.post("/auth/login")
async def login(body: LoginRequest):
    """
    管理员登录。

    成功返回 {code: 1, token: "..."}，失败返回 {code: -1, msg: "..."}。
    """
    try:
        result = authenticate(body.username, body.password)
        return JSONResponse(content=result)
    except ValueError as e:
        return JSONResponse(content={"code": -1, "msg": str(e)})


# ── 仪表盘 ────────────────────────────────────────────────


@router.get("/dashboard")
async def dashboard(admin: dict = Depends(get_current_admin)):
    """各状态提交数、今日通过数与入账金额、最近提交记录。"""
    db = get_db()
    try:
        rows = db.execute(
            "SELECT status, COUNT(*) AS cnt FROM payment_submissions GROUP BY status"
        ).fetchall()
        counts = {s: 0 for s in STATUSES}
        for r in rows:
            counts[r["status"]] = r["cnt"]

        today = date.today().isoformat()
        today_row = db.execute(
            """SELECT COUNT(*) AS cnt, COALESCE(SUM(o.amount), 0) AS amount
               FROM payment_submissions s
               JOIN payment_orders o ON o.order_id = s.order_id
               WHERE s.status = 'approved' AND date(s.resolved_at) = ?""",
            (today,),
        ).fetchone()

        recent_rows = db.execute(
            """SELECT id, order_id, user_id, status, fraud_score, created_at
               FROM payment_submissions ORDER BY created_at DESC, id DESC LIMIT 10"""
        ).fetchall()
    finally:
        db.close()

    return JSONResponse(content={
        "code": 1,
        "status_counts": counts,
        "today": {
            "approved": today_row["cnt"],
            "approved_amount": format_minor(today_row["amount"]),
        },
        "recent_submissions": [dict(r) for r in recent_rows],
    })


# ── 审核队列 ──────────────────────────────────────────────


def _build_submission_filters(status: str | None, user_id: str | None, order_id: str | None):
    """构建提交记录筛选 SQL 条件和参数。"""
    conditions = []
    params = []
    if status:
        conditions.append("s.status = ?")
        params.append(status)
    if user_id:
        conditions.append("s.user_id = ?")
        params.append(user_id)
    if order_id:
        conditions.append("s.order_id LIKE ?")
        params.append(f"%{order_id}%")
    return conditions, params


def _submission_summary(row) -> dict:
    return {
        "id": row["id"],
        "order_id": row["order_id"],
        "user_id": row["user_id"],
        "status": row["status"],
        "order_amount": format_minor(row["order_amount"]) if row["order_amount"] is not None else None,
        "extracted_amount": format_minor(row["extracted_amount"]) if row["extracted_amount"] is not None else None,
        "reference_number": row["reference_number"],
        "ocr_confidence": row["ocr_confidence"],
        "fraud_score": row["fraud_score"],
        "fraud_flags": json.loads(row["fraud_flags"] or "[]"),
        "created_at": row["created_at"],
    }


_LIST_COLUMNS = """s.id, s.order_id, s.user_id, s.status, s.extracted_amount,
                   s.reference_number, s.ocr_confidence, s.fraud_score,
                   s.fraud_flags, s.created_at, o.amount AS order_amount"""


@router.get("/submissions/export")
async def export_submissions(
    admin: dict = Depends(get_current_admin),
    status: str | None = Query(None),
    user_id: str | None = Query(None),
    order_id: str | None = Query(None),
):
    """导出提交记录为 CSV 文件。"""
    conditions, params = _build_submission_filters(status, user_id, order_id)
    where_clause = " AND ".join(conditions) if conditions else "1=1"
    db = get_db()
    try:
        rows = db.execute(
            f"""SELECT {_LIST_COLUMNS}, s.resolved_by, s.resolved_at, s.resolution_reason
                FROM payment_submissions s
                LEFT JOIN payment_orders o ON o.order_id = s.order_id
                WHERE {where_clause}
                ORDER BY s.created_at DESC, s.id DESC""",
            params,
        ).fetchall()
    finally:
        db.close()

    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow([
        "submission_id", "order_id", "user_id", "status", "order_amount",
        "extracted_amount", "reference_number", "ocr_confidence", "fraud_score",
        "fraud_flags", "resolved_by", "resolved_at", "resolution_reason", "created_at",
    ])
    for r in rows:
        s = _submission_summary(r)
        writer.writerow([
            s["id"], s["order_id"], s["user_id"], s["status"], s["order_amount"] or "",
            s["extracted_amount"] or "", s["reference_number"] or "",
            s["ocr_confidence"] if s["ocr_confidence"] is not None else "",
            s["fraud_score"], "|".join(f["rule"] for f in s["fraud_flags"]),
            r["resolved_by"] or "", r["resolved_at"] or "", r["resolution_reason"] or "",
            s["created_at"],
        ])

    output.seek(0)
    return StreamingResponse(
        iter([output.getvalue()]),
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=submissions.csv"},
    )


@router.get("/submissions")
async def submission_list(
    admin: dict = Depends(get_current_admin),
    status: str | None = Query(None),
    user_id: str | None = Query(None),
    order_id: str | None = Query(None),
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
):
    """
    提交记录列表（支持筛选和分页）。

    manual_review 队列按提交时间正序（先进先审），其余按时间倒序。
    """
    if status and status not in STATUSES:
        return JSONResponse(content={"code": -1, "msg": f"unknown status: {status}"})

    conditions, params = _build_submission_filters(status, user_id, order_id)
    where_clause = " AND ".join(conditions) if conditions else "1=1"
    order_clause = "ASC" if status == MANUAL_REVIEW else "DESC"

    db = get_db()
    try:
        total = db.execute(
            f"SELECT COUNT(*) AS cnt FROM payment_submissions s WHERE {where_clause}", params
        ).fetchone()["cnt"]
        total_pages = max(1, math.ceil(total / per_page))

        offset = (page - 1) * per_page
        rows = db.execute(
            f"""SELECT {_LIST_COLUMNS}
                FROM payment_submissions s
                LEFT JOIN payment_orders o ON o.order_id = s.order_id
                WHERE {where_clause}
                ORDER BY s.created_at {order_clause}, s.id {order_clause}
                LIMIT ? OFFSET ?""",
            params + [per_page, offset],
        ).fetchall()
    finally:
        db.close()

    return JSONResponse(content={
        "code": 1,
        "submissions": [_submission_summary(r) for r in rows],
        "total": total,
        "page": page,
        "per_page": per_page,
        "total_pages": total_pages,
    })


@router.get("/submissions/{submission_id}")
async def submission_detail(submission_id: int, admin: dict = Depends(get_current_admin)):
    """提交记录详情：订单、指纹、提取结果、风险标记（含权重）及审核日志。"""
    db = get_db()
    try:
        row = db.execute(
            "SELECT * FROM payment_submissions WHERE id = ?", (submission_id,)
        ).fetchone()
        if not row:
            return JSONResponse(status_code=404, content={"code": -1, "msg": "submission not found"})
        order = db.execute(
            "SELECT * FROM payment_orders WHERE order_id = ?", (row["order_id"],)
        ).fetchone()
    finally:
        db.close()

    submission = dict(row)
    submission["fraud_flags"] = json.loads(submission["fraud_flags"] or "[]")
    submission["validation_errors"] = json.loads(submission["validation_errors"] or "[]")
    submission["has_exif"] = bool(submission["has_exif"]) if submission["has_exif"] is not None else None

    order_data = None
    if order:
        order_data = dict(order)
        order_data["amount_display"] = format_minor(order["amount"])
        order_data["fulfilled"] = bool(order["fulfilled"])

    return JSONResponse(content={
        "code": 1,
        "submission": submission,
        "order": order_data,
        "logs": audit_log.list_logs(submission_id),
    })


class ApproveRequest(BaseModel):
    notes: str | None = None


class RejectRequest(BaseModel):
    reason: str
    notes: str | None = None


async def _resolve(submission_id: int, admin: dict, decision: str, reason: str | None, notes: str | None):
    try:
        result = AdjudicationService().resolve(
            submission_id, admin.get("sub", "admin"), decision, reason, notes
        )
    except InvalidStateError as e:
        return JSONResponse(status_code=409, content={"code": -1, "msg": str(e)})
    except ValueError as e:
        return JSONResponse(status_code=400, content={"code": -1, "msg": str(e)})

    if result["status"] == "approved":
        await asyncio.to_thread(SettlementNotifier().retry_due)
    return JSONResponse(content={"code": 1, **result})


@router.post("/submissions/{submission_id}/approve")
async def approve_submission(
    submission_id: int, body: ApproveRequest, admin: dict = Depends(get_current_admin)
):
    """人工审核通过（执行结算）。"""
    return await _resolve(submission_id, admin, DECISION_APPROVE, None, body.notes)


@router.post("/submissions/{submission_id}/reject")
async def reject_submission(
    submission_id: int, body: RejectRequest, admin: dict = Depends(get_current_admin)
):
    """人工审核拒绝（必须填写原因）。"""
    return await _resolve(submission_id, admin, DECISION_REJECT, body.reason, body.notes)


# ── 结算通知 ──────────────────────────────────────────────


@router.post("/settlements/{order_id}/renotify")
async def renotify_settlement(order_id: str, admin: dict = Depends(get_current_admin)):
    """重新推送订单的结算事件。"""
    notifier = SettlementNotifier()
    event = notifier.get_event_by_order(order_id)
    if not event:
        return JSONResponse(status_code=404, content={"code": -1, "msg": "settlement event not found"})
    if not notifier.notify_url:
        return JSONResponse(content={"code": -1, "msg": "settlement notify url is not configured"})

    if notifier.send_notify(event["id"]):
        return JSONResponse(content={"code": 1, "msg": "notification delivered"})
    return JSONResponse(content={"code": -1, "msg": "notification failed, check delivery logs"})


# ── 风控配置 ──────────────────────────────────────────────


@router.get("/settings/risk")
async def get_risk_settings(admin: dict = Depends(get_current_admin)):
    """当前生效的风控阈值与规则权重。"""
    from dataclasses import asdict
    return JSONResponse(content={"code": 1, "risk": asdict(load_risk_config())})


@router.put("/settings/risk")
async def update_risk_settings(body: dict, admin: dict = Depends(get_current_admin)):
    """修改风控阈值与规则权重（部分更新）。"""
    from dataclasses import asdict
    try:
        config = update_risk_config(body)
    except RiskConfigError as e:
        return JSONResponse(status_code=400, content={"code": -1, "msg": str(e)})
    return JSONResponse(content={"code": 1, "risk": asdict(config)})


# ── 系统设置 ────────────────────────────────────────────────


class ChangePasswordRequest(BaseModel):
    old_password: str
    new_password: str


class ReceivingAccountRequest(BaseModel):
    account_name: str
    account_number: str


class OcrCredentialsRequest(BaseModel):
    api_url: str
    api_key: str


@router.get("/settings")
async def settings_page(admin: dict = Depends(get_current_admin)):
    """系统设置：收款账户、收款码、OCR 凭证配置状态。"""
    return JSONResponse(content={"code": 1, **get_settings_status()})


@router.post("/settings/receiving-account")
async def save_receiving_account_route(
    body: ReceivingAccountRequest, admin: dict = Depends(get_current_admin)
):
    """配置平台 GCash 收款账户。"""
    try:
        result = save_receiving_account(body.account_name, body.account_number)
        return JSONResponse(content={"code": 1, **result})
    except PlatformConfigError as e:
        return JSONResponse(content={"code": -1, "msg": str(e)})


@router.post("/settings/qrcode")
async def upload_qrcode_route(
    file: UploadFile = File(...),
    admin: dict = Depends(get_current_admin),
):
    """上传 GCash 收款码图片。"""
    try:
        content = await file.read()
        result = upload_qrcode(content, file.filename or "upload.png")
        return JSONResponse(content={"code": 1, "msg": "QR code uploaded", **result})
    except PlatformConfigError as e:
        return JSONResponse(content={"code": -1, "msg": str(e)})


@router.post("/settings/ocr-credentials")
async def save_ocr_credentials_route(
    body: OcrCredentialsRequest, admin: dict = Depends(get_current_admin)
):
    """配置 OCR 服务地址与 API Key（加密存储）。"""
    try:
        result = save_ocr_credentials(body.api_url, body.api_key)
    except PlatformConfigError as e:
        return JSONResponse(content={"code": -1, "msg": str(e)})

    # 新凭证对后续审核生效
    from app.services.verification_worker import set_orchestrator
    set_orchestrator(None)
    return JSONResponse(content={"code": 1, **result})


@router.post("/settings/change-password")
async def change_password_route(
    body: ChangePasswordRequest,
    admin: dict = Depends(get_current_admin),
):
    """修改管理员密码。"""
    username = admin.get("sub")
    if not username:
        return JSONResponse(content={"code": -1, "msg": "unable to identify current user"})

    db = get_db()
    try:
        row = db.execute(
            "SELECT id, password_hash FROM admin WHERE username = ?", (username,)
        ).fetchone()
        if not row:
            return JSONResponse(content={"code": -1, "msg": "user not found"})

        if not verify_password(body.old_password, row["password_hash"]):
            return JSONResponse(content={"code": -1, "msg": "old password is incorrect"})

        if len(body.new_password) < 6:
            return JSONResponse(content={"code": -1, "msg": "new password must be at least 6 characters"})

        db.execute(
            "UPDATE admin SET password_hash = ? WHERE id = ?",
            (hash_password(body.new_password), row["id"]),
        )
        db.commit()
        return JSONResponse(content={"code": 1, "msg": "password changed"})
    finally:
        db.close()
