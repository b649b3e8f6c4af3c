from fastapi import HTTPException

from mintflow.errors import (
    CaptureError,
    InvalidTransitionError,
    NotFoundError,
    PipelineError,
    ReadRateLimitError,
    StorageUploadError,
    TransactionPendingTimeout,
    UploadFailure,
)

_CAPTURE_STATUS = {
    "busy": 409,
    "not_recording": 409,
    "permission_denied": 403,
    "device_unavailable": 503,
    "encode_failed": 500,
}

_UPLOAD_STATUS = {
    UploadFailure.EMPTY: 400,
    UploadFailure.TOO_LARGE: 400,
    UploadFailure.RATE_LIMITED: 429,
    UploadFailure.TIMEOUT: 504,
    UploadFailure.AUTH_FAILURE: 502,
    UploadFailure.PROVIDER_ERROR: 502,
}


def upload_status(kind: UploadFailure) -> int:
    return _UPLOAD_STATUS[kind]


def http_error(e: PipelineError) -> HTTPException:
    """Map a pipeline error to the HTTP answer the API gives for it."""
    if isinstance(e, CaptureError):
        status = _CAPTURE_STATUS.get(e.kind, 400)
    elif isinstance(e, StorageUploadError):
        status = upload_status(e.kind)
    elif isinstance(e, NotFoundError):
        status = 404
    elif isinstance(e, InvalidTransitionError):
        status = 409
    elif isinstance(e, ReadRateLimitError):
        status = 429
    elif isinstance(e, TransactionPendingTimeout):
        status = 504
    else:
        status = 502

    detail: dict = {"reason": e.reason}
    if e.tx_hash:
        detail["tx_hash"] = e.tx_hash
    if e.content_id:
        detail["content_id"] = e.content_id
    return HTTPException(status_code=status, detail=detail)
