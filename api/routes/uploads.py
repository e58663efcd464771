"""上传相关路由：预签名直传、分片上传（发起/签名/完成/中止）与服务端中转上传。"""
from __future__ import annotations

from fastapi import APIRouter, Depends, File, Form, UploadFile

from api.dependencies import get_upload_service
from application.dtos.uploads import (
    AbortMultipartRequest,
    CompleteMultipartRequest,
    CompleteMultipartResponse,
    InitiateMultipartRequest,
    InitiateMultipartResponse,
    PresignedUrlRequest,
    PresignedUrlResponse,
    SignPartRequest,
    SignPartResponse,
    UploadResultResponse,
)
from application.services.upload_service import UploadApplicationService
from application.utils.sources import BytesSource
from core.response import Response as ApiResponse, success_response
from domain.upload import Category, UploadRequest


router = APIRouter(
    prefix="/uploads",
    tags=["上传"],
)


@router.post(
    "/presigned-url",
    summary="生成单次直传预签名 URL",
    response_model=ApiResponse[PresignedUrlResponse],
)
async def create_presigned_url(
    payload: PresignedUrlRequest,
    service: UploadApplicationService = Depends(get_upload_service),
):
    ticket = await service.presign_direct_upload(
        payload.file_name,
        payload.type,
        content_type=payload.content_type,
        size=payload.size,
        expires_in=payload.expires_in,
    )
    data = PresignedUrlResponse(
        key=ticket.key,
        url=ticket.url,
        method=ticket.method,
        headers=ticket.headers,
        expires_in=ticket.expires_in,
        content_type=ticket.content_type,
        bucket=ticket.bucket,
        region=ticket.region,
    )
    return success_response(data=data, message="预签名生成成功")


@router.post(
    "/direct",
    summary="服务端中转上传",
    response_model=ApiResponse[UploadResultResponse],
)
async def upload_direct(
    file: UploadFile = File(..., description="要上传的文件"),
    type: Category = Form(..., description="上传类别：dem 或 video"),
    service: UploadApplicationService = Depends(get_upload_service),
):
    """读取表单文件后交由应用服务按大小选择单次或分片上传。"""
    # 先按声明大小拦截，避免读入超限文件
    if file.size is not None:
        service.check_size(type, file.size)
    data = await file.read()
    request = UploadRequest(
        source=BytesSource(data),
        category=type,
        file_name=file.filename or "upload.bin",
        content_type=file.content_type,
    )
    result = await service.upload(request)
    return success_response(data=UploadResultResponse(**vars(result)), message="文件上传成功")


@router.post(
    "/multipart/initiate",
    summary="发起分片上传",
    response_model=ApiResponse[InitiateMultipartResponse],
)
async def initiate_multipart(
    payload: InitiateMultipartRequest,
    service: UploadApplicationService = Depends(get_upload_service),
):
    ticket = await service.initiate_multipart(
        payload.file_name,
        payload.type,
        content_type=payload.content_type,
        size=payload.size,
    )
    return success_response(data=InitiateMultipartResponse(**vars(ticket)), message="分片上传已发起")


@router.post(
    "/multipart/sign",
    summary="签发分片上传 URL",
    response_model=ApiResponse[SignPartResponse],
)
async def sign_part(
    payload: SignPartRequest,
    service: UploadApplicationService = Depends(get_upload_service),
):
    presigned = await service.sign_part(
        payload.key,
        payload.upload_id,
        payload.part_number,
        expires_in=payload.expires_in,
    )
    data = SignPartResponse(
        url=presigned.url,
        method=presigned.method,
        part_number=payload.part_number,
        expires_in=presigned.expires_in,
    )
    return success_response(data=data)


@router.post(
    "/multipart/complete",
    summary="完成分片上传",
    response_model=ApiResponse[CompleteMultipartResponse],
)
async def complete_multipart(
    payload: CompleteMultipartRequest,
    service: UploadApplicationService = Depends(get_upload_service),
):
    completed = await service.complete_multipart(
        payload.key,
        payload.upload_id,
        [(p.part_number, p.etag) for p in payload.parts],
    )
    data = CompleteMultipartResponse(key=completed.key, location=completed.location, etag=completed.etag)
    return success_response(data=data, message="分片上传已完成")


@router.post(
    "/multipart/abort",
    summary="中止分片上传",
    response_model=ApiResponse[dict],
)
async def abort_multipart(
    payload: AbortMultipartRequest,
    service: UploadApplicationService = Depends(get_upload_service),
):
    await service.abort_multipart(payload.key, payload.upload_id)
    return success_response(data={"aborted": True}, message="分片上传已中止")
