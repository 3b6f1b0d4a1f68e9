"""
用户付款接口路由：创建订单、查询订单、上传付款截图、查询审核状态。

用户身份由上游网关通过 X-User-Id 请求头传入。
"""

import logging

from fastapi import APIRouter, Depends, File, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from app.services.auth import get_current_user_id
from app.services.order_service import OrderCreateError, OrderService
from app.services.submission_service import SubmissionCreateError, SubmissionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1")


class TopupOrderRequest(BaseModel):
    amount: str


class PlatformFeeOrderRequest(BaseModel):
    bid_id: str
    amount: str


@router.post("/orders/topup")
async def create_topup_order(
    body: TopupOrderRequest, user_id: str = Depends(get_current_user_id)
):
    """创建钱包充值订单，返回收款账户信息。"""
    svc = OrderService()
    try:
        order = svc.create_topup_order(user_id, body.amount)
    except OrderCreateError as e:
        return JSONResponse(content={"code": -1, "msg": str(e)})
    return JSONResponse(content={"code": 1, "order": svc.display_data(order)})


@router.post("/orders/platform-fee")
async def create_platform_fee_order(
    body: PlatformFeeOrderRequest, user_id: str = Depends(get_current_user_id)
):
    """创建平台服务费订单（关联竞价）。"""
    svc = OrderService()
    try:
        order = svc.create_platform_fee_order(user_id, body.bid_id, body.amount)
    except OrderCreateError as e:
        return JSONResponse(content={"code": -1, "msg": str(e)})
    return JSONResponse(content={"code": 1, "order": svc.display_data(order)})


@router.get("/orders/{order_id}")
async def get_order(order_id: str, user_id: str = Depends(get_current_user_id)):
    """订单详情（仅本人可见）。"""
    svc = OrderService()
    order = svc.get_order(order_id)
    if not order or order.user_id != user_id:
        return JSONResponse(status_code=404, content={"code": -1, "msg": "order not found"})
    return JSONResponse(content={"code": 1, "order": svc.display_data(order)})


@router.post("/orders/{order_id}/submissions")
async def upload_payment_proof(
    order_id: str,
    file: UploadFile = File(...),
    user_id: str = Depends(get_current_user_id),
):
    """
    上传付款截图。

    创建 pending 提交记录后立即返回，审核在后台进行。
    """
    content = await file.read()
    try:
        submission_id = SubmissionService().create_submission(
            order_id, user_id, content, file.filename or ""
        )
    except SubmissionCreateError as e:
        return JSONResponse(content={"code": -1, "msg": str(e)})

    # 启动后台审核
    from app.services.verification_worker import start_verification
    start_verification(submission_id)

    return JSONResponse(content={
        "code": 1,
        "submission_id": submission_id,
        "status": "pending",
        "msg": "Payment proof received. Verification usually takes less than a minute.",
    })


@router.get("/submissions/{submission_id}")
async def get_submission_status(
    submission_id: int, user_id: str = Depends(get_current_user_id)
):
    """审核状态轮询接口。"""
    result = SubmissionService().get_status(submission_id, user_id)
    if result is None:
        return JSONResponse(status_code=404, content={"code": -1, "msg": "submission not found"})
    return JSONResponse(content={"code": 1, **result})
