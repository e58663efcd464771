"""
REST API客户端基类

提供通用的HTTP请求功能，包括：
- 自动重试（tenacity，指数退避）
- 错误分类
- 请求/响应日志
- 超时控制
"""
import json
from typing import Dict, Any, Optional, Type, TypeVar
from dataclasses import dataclass
import time

import anyio
import httpx
from pydantic import BaseModel
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from core.logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar('T', bound=BaseModel)


@dataclass
class APIResponse:
    """API响应封装"""
    status_code: int
    headers: Dict[str, str]
    data: Any
    raw_content: bytes
    elapsed_ms: float
    request_id: Optional[str] = None

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def is_error(self) -> bool:
        return self.status_code >= 400

    def json(self) -> Any:
        """获取JSON响应"""
        if self.data is not None:
            return self.data
        return json.loads(self.raw_content)


class APIError(Exception):
    """API错误基类"""
    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response: Optional[APIResponse] = None,
        request_id: Optional[str] = None
    ):
        self.message = message
        self.status_code = status_code
        self.response = response
        self.request_id = request_id
        super().__init__(self.message)

    def __str__(self):
        parts = [self.message]
        if self.status_code:
            parts.append(f"Status: {self.status_code}")
        if self.request_id:
            parts.append(f"Request ID: {self.request_id}")
        return " | ".join(parts)


class AuthenticationError(APIError):
    """认证错误"""


class NotFoundError(APIError):
    """资源未找到错误"""


class RateLimitError(APIError):
    """速率限制错误"""


class ServerError(APIError):
    """服务器错误"""


class RetryableAPIError(APIError):
    """可重试的API错误"""


RETRY_STATUS_CODES = {429, 500, 502, 503, 504}

# 请求必然未到达服务端的错误；非幂等请求只对这些重试
_UNSENT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout)

_ERROR_CLASSES: Dict[int, Type[APIError]] = {
    401: AuthenticationError,
    403: AuthenticationError,
    404: NotFoundError,
    429: RateLimitError,
    500: ServerError,
    502: ServerError,
    503: ServerError,
    504: ServerError,
}


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "api_request_retry",
        attempt=retry_state.attempt_number,
        error=str(exc),
        error_type=type(exc).__name__,
    )


class BaseAPIClient:
    """
    REST API客户端基类

    子类继承后实现具体的API调用；``transport`` 可注入（测试中使用 httpx.MockTransport）
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        headers: Optional[Dict[str, str]] = None,
        auth_token: Optional[str] = None,
        verify_ssl: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            base_url: API基础URL
            timeout: 请求超时时间（秒）
            max_retries: 最大重试次数（不含首次请求）
            retry_delay: 重试基础延迟（秒）
            headers: 默认请求头
            auth_token: 认证令牌
            verify_ssl: 是否验证SSL证书
            transport: 自定义 httpx 传输层
        """
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.verify_ssl = verify_ssl
        self._transport = transport

        self.default_headers = {
            "Accept": "application/json",
            "User-Agent": "replay-upload-client/1.0",
        }
        if headers:
            self.default_headers.update(headers)
        if auth_token:
            self.default_headers["Authorization"] = f"Bearer {auth_token}"

        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """获取或创建HTTP客户端"""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                verify=self.verify_ssl,
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    async def close(self):
        """关闭HTTP客户端"""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _build_url(self, endpoint: str) -> str:
        return f"{self.base_url}/{endpoint.lstrip('/')}"

    def _raise_for_error(self, response: APIResponse) -> None:
        """将错误响应转换为对应的 APIError 子类"""
        error_class = _ERROR_CLASSES.get(response.status_code, APIError)
        message = f"API request failed with status {response.status_code}"
        if isinstance(response.data, dict):
            message = (
                response.data.get("message")
                or response.data.get("error")
                or response.data.get("detail")
                or message
            )
        raise error_class(
            message=str(message),
            status_code=response.status_code,
            response=response,
            request_id=response.request_id,
        )

    async def _send_once(self, method: str, url: str, **kwargs) -> APIResponse:
        start = time.perf_counter()
        client = await self._get_client()
        response = await client.request(method=method, url=url, **kwargs)
        elapsed = (time.perf_counter() - start) * 1000

        data = None
        if "application/json" in response.headers.get("content-type", ""):
            try:
                data = response.json()
            except json.JSONDecodeError:
                data = None

        api_response = APIResponse(
            status_code=response.status_code,
            headers=dict(response.headers),
            data=data,
            raw_content=response.content,
            elapsed_ms=elapsed,
            request_id=response.headers.get("x-request-id"),
        )
        logger.debug(
            "api_response",
            method=method,
            url=url,
            status_code=api_response.status_code,
            elapsed_ms=round(elapsed, 2),
            request_id=api_response.request_id,
        )

        if api_response.is_error and api_response.status_code in RETRY_STATUS_CODES:
            if api_response.status_code == 429:
                retry_after = api_response.headers.get("retry-after")
                try:
                    if retry_after:
                        await anyio.sleep(min(float(retry_after), 60.0))
                except ValueError:
                    pass
            raise RetryableAPIError(
                message=f"Transient API error with status {api_response.status_code}",
                status_code=api_response.status_code,
                response=api_response,
                request_id=api_response.request_id,
            )
        if api_response.is_error:
            self._raise_for_error(api_response)
        return api_response

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict[str, Any]] = None,
        json_data: Optional[Any] = None,
        headers: Optional[Dict[str, str]] = None,
        retry: bool = True,
        **kwargs
    ) -> APIResponse:
        """
        发送HTTP请求，瞬时错误（超时、网络错误、429/5xx）按指数退避重试

        ``retry=False`` 用于非幂等请求：仅在连接未建立时重试，
        读超时或 5xx 之后不再重发，避免服务端重复执行。

        Raises:
            APIError: 重试耗尽或不可重试的错误
        """
        url = self._build_url(endpoint)
        request_headers = {**self.default_headers, **(headers or {})}
        if isinstance(json_data, BaseModel):
            json_data = json_data.model_dump(by_alias=True, exclude_none=True)

        retrying = AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(
                multiplier=self.retry_delay,
                min=self.retry_delay,
                max=self.retry_delay * 8
            ),
            retry=retry_if_exception_type(
                (httpx.TimeoutException, httpx.NetworkError, RetryableAPIError) if retry else _UNSENT_ERRORS
            ),
            before_sleep=_log_retry,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    return await self._send_once(
                        method, url, params=params, json=json_data, headers=request_headers, **kwargs
                    )
        except httpx.TimeoutException as exc:
            raise APIError(f"Request timeout after {self.timeout}s") from exc
        except httpx.NetworkError as exc:
            raise APIError(f"Network error: {exc}") from exc
        except RetryableAPIError as exc:
            if exc.response is not None:
                self._raise_for_error(exc.response)
            raise APIError(exc.message, status_code=exc.status_code) from exc
        raise APIError("Request was not attempted")

    async def get(self, endpoint: str, **kwargs) -> APIResponse:
        return await self._request("GET", endpoint, **kwargs)

    async def post(self, endpoint: str, **kwargs) -> APIResponse:
        return await self._request("POST", endpoint, **kwargs)

    async def post_typed(self, endpoint: str, response_model: Type[T], **kwargs) -> T:
        """发送POST请求，并将统一响应中的 data 解析为 response_model"""
        response = await self.post(endpoint, **kwargs)
        body = response.json()
        payload = body.get("data") if isinstance(body, dict) and "data" in body else body
        return response_model.model_validate(payload)
