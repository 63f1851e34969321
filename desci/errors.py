from typing import Any, Dict, List, Optional


class DeSciError(Exception):
    """业务错误基类，status_code 对应 HTTP 状态码"""

    status_code = 500

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.message = message
        self.errors = errors


class ValidationFailed(DeSciError):
    status_code = 400


class SelfReviewRejected(DeSciError):
    status_code = 400


class SignatureRejected(DeSciError):
    status_code = 401


class NotFound(DeSciError):
    status_code = 404


class UpstreamError(DeSciError):
    """外部服务（IPFS、语言模型）调用失败"""

    status_code = 500


class ContentStoreError(UpstreamError):
    pass
