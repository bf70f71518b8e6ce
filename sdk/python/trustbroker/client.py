from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
from urllib.parse import quote

import httpx

from .errors import (
    ErrorCode,
    InitializationError,
    RequestError,
    SigningError,
    error_from_response,
    error_from_transport,
    invalid_response,
)
from .polling import ConsentPoller, PollConfig, RequestRecord
from .signing import KeyMaterial, stable_json, verify_signature

APIVersion = "v1"
DEFAULT_BROKER_URL = "https://broker.trustbroker.io"
SDK_VERSION = "0.1.0"

CLIENT_ID_HEADER = "Client-Id"
SIGNATURE_HEADER = "Signature"

log = logging.getLogger(__name__)


class AuthStrategy:
    def apply(self, headers: Dict[str, str], method: str, path_with_query: str, body_bytes: str) -> None:
        raise NotImplementedError


class BearerAuth(AuthStrategy):
    def __init__(self, token: str):
        self.token = token

    def apply(self, headers: Dict[str, str], method: str, path_with_query: str, body_bytes: str) -> None:
        if not self.token:
            raise ValueError("bearer access token is required")
        headers["Authorization"] = f"Bearer {self.token}"


class ClientSignatureAuth(AuthStrategy):
    """Stamps broker calls with the client identity and a body signature.

    ``body_bytes`` is the exact canonical text that goes on the wire, so the
    broker can verify the ``Signature`` header against the raw request body.
    Requests without a body carry only ``Client-Id``.
    """

    def __init__(self, client_id: str, keys: KeyMaterial):
        self.client_id = client_id
        self.keys = keys

    def apply(self, headers: Dict[str, str], method: str, path_with_query: str, body_bytes: str) -> None:
        headers[CLIENT_ID_HEADER] = self.client_id
        if body_bytes:
            headers[SIGNATURE_HEADER] = self.keys.sign(body_bytes)


@dataclass
class ProviderDataResponse:
    signature: Optional[str]
    request_id: Optional[str]
    data: Any

    @classmethod
    def from_dict(cls, raw: Any) -> "ProviderDataResponse":
        if not isinstance(raw, dict):
            raise invalid_response("provider", "expected a JSON object")
        return cls(signature=raw.get("signature"), request_id=raw.get("requestId"), data=raw.get("data"))


class TrustBrokerClient:
    """Requester-side client for the Trust Broker.

    Every broker call is signed through ``ClientSignatureAuth``. Provider calls
    go straight to the endpoint the broker hands out once consent is granted.
    """

    def __init__(
        self,
        client_id: str,
        private_key: Any,
        public_key: Any = None,
        broker_url: str = DEFAULT_BROKER_URL,
        poll: Optional[PollConfig] = None,
        timeout_seconds: float = 10.0,
        logger: Optional[logging.Logger] = None,
        http: Optional[httpx.Client] = None,
    ):
        if not client_id:
            raise InitializationError("client id is required")
        if isinstance(private_key, KeyMaterial) and public_key is not None:
            raise InitializationError("public_key cannot be combined with KeyMaterial; set KeyMaterial.public_key instead")
        self._client_id = client_id
        self.keys = private_key if isinstance(private_key, KeyMaterial) else KeyMaterial.load(private_key, public_key)
        self.base_url = (broker_url or DEFAULT_BROKER_URL).rstrip("/")
        self.poll = poll or PollConfig()
        self.timeout_seconds = timeout_seconds
        self.logger = logger or log
        self.auth = ClientSignatureAuth(client_id, self.keys)
        self.http = http or httpx.Client(timeout=self.timeout_seconds)

    @classmethod
    def from_config(cls, config: Any, **kwargs: Any) -> "TrustBrokerClient":
        return cls(
            client_id=config.client_id,
            private_key=config.private_key_pem,
            public_key=config.public_key_pem,
            broker_url=config.broker_url,
            poll=PollConfig(interval_ms=config.poll_interval_ms, timeout_ms=config.poll_timeout_ms),
            **kwargs,
        )

    @property
    def client_id(self) -> str:
        return self._client_id

    def get_my_institution(self) -> Dict[str, Any]:
        return self._request("GET", "/institution/me", None, "get_my_institution")

    def get_institution_by_id(self, institution_id: str) -> Dict[str, Any]:
        if not institution_id:
            raise ValueError("institution_id is required")
        return self._request("GET", f"/institution/{quote(institution_id, safe='')}", None, "get_institution_by_id")

    def get_platform_public_key(self) -> str:
        out = self._request("GET", "/system/public-key", None, "get_platform_public_key", expect_json=False)
        if isinstance(out, dict):
            out = out.get("publicKey") or out.get("public_key")
        if not isinstance(out, str) or not out:
            raise invalid_response("get_platform_public_key", "missing public key")
        return out

    def create_data_request(
        self,
        provider_id: str,
        schema_id: str,
        data_owner_id: Optional[str] = None,
        owner_external_id: Optional[str] = None,
        expires_in: int = 3600,
        needed_data: Any = None,
    ) -> Dict[str, Any]:
        if not provider_id or not schema_id:
            raise ValueError("provider_id and schema_id are required")
        if bool(data_owner_id) == bool(owner_external_id):
            raise ValueError("exactly one of data_owner_id or owner_external_id is required")
        body: Dict[str, Any] = {"providerId": provider_id, "schemaId": schema_id, "expiresIn": expires_in or 3600}
        if data_owner_id:
            body["dataOwnerId"] = data_owner_id
        else:
            body["ownerExternalId"] = owner_external_id
        if needed_data is not None:
            body["neededData"] = needed_data
        out = self._request("POST", "/requests", body, "create_data_request")
        if not isinstance(out, dict) or not out.get("requestId"):
            raise invalid_response("create_data_request", "missing requestId")
        return out

    def get_request_status(self, request_id: str) -> RequestRecord:
        return RequestRecord.from_dict(self._fetch_status(request_id), request_id)

    def get_request_token(self, request_id: str) -> RequestRecord:
        return RequestRecord.from_dict(self._fetch_token(request_id), request_id)

    def poll_for_consent(
        self,
        request_id: str,
        cancel_event: Optional[threading.Event] = None,
        on_status: Optional[Callable[[RequestRecord], None]] = None,
        interval_ms: Optional[int] = None,
        timeout_ms: Optional[int] = None,
        use_token_endpoint: bool = False,
    ) -> RequestRecord:
        config = PollConfig(
            interval_ms=interval_ms if interval_ms is not None else self.poll.interval_ms,
            timeout_ms=timeout_ms if timeout_ms is not None else self.poll.timeout_ms,
        )
        fetch = self._fetch_token if use_token_endpoint else self._fetch_status
        poller = ConsentPoller(fetch, config=config, logger=self.logger)
        return poller.poll(request_id, cancel_event=cancel_event, on_status=on_status)

    def request_data_from_provider(
        self,
        provider_endpoint: str,
        request_id: str,
        platform_signature: str,
        requester_signature: str,
    ) -> ProviderDataResponse:
        if not provider_endpoint:
            raise ValueError("provider_endpoint is required")
        body = {
            "requesterId": self._client_id,
            "platformSignature": platform_signature,
            "requestId": request_id,
            "signature": requester_signature,
        }
        raw = self._send(
            "POST", provider_endpoint, body, None, "request_data_from_provider", ErrorCode.PROVIDER_ERROR,
            url_error_status=ErrorCode.INVALID_RESPONSE,
        )
        return ProviderDataResponse.from_dict(raw)

    def fetch_with_token(self, provider_endpoint: str, access_token: str, body: Optional[Dict[str, Any]] = None) -> ProviderDataResponse:
        if not provider_endpoint:
            raise ValueError("provider_endpoint is required")
        raw = self._send(
            "POST", provider_endpoint, body, BearerAuth(access_token), "fetch_with_token", ErrorCode.PROVIDER_ERROR,
            url_error_status=ErrorCode.INVALID_RESPONSE,
        )
        return ProviderDataResponse.from_dict(raw)

    def submit_requester_signature(
        self,
        request_id: str,
        provider_id: str,
        provider_signature: str,
        platform_signature: str,
        requester_signature: str,
    ) -> Dict[str, Any]:
        if not request_id:
            raise ValueError("request_id is required")
        body = {
            "providerId": provider_id,
            "providerSignature": provider_signature,
            "platformSignature": platform_signature,
            "requesterSignature": requester_signature,
        }
        path = f"/requests/{quote(request_id, safe='')}/requester-signature"
        return self._request("POST", path, body, "submit_requester_signature")

    def request_data(
        self,
        provider_id: str,
        schema_id: str,
        data_owner_id: Optional[str] = None,
        owner_external_id: Optional[str] = None,
        expires_in: int = 3600,
        needed_data: Any = None,
        cancel_event: Optional[threading.Event] = None,
        on_status: Optional[Callable[[RequestRecord], None]] = None,
        interval_ms: Optional[int] = None,
        timeout_ms: Optional[int] = None,
    ) -> ProviderDataResponse:
        created = self.create_data_request(
            provider_id=provider_id,
            schema_id=schema_id,
            data_owner_id=data_owner_id,
            owner_external_id=owner_external_id,
            expires_in=expires_in,
            needed_data=needed_data,
        )
        request_id = created["requestId"]
        self.logger.info("created data request %s for provider %s", request_id, provider_id)
        approved = self.poll_for_consent(
            request_id,
            cancel_event=cancel_event,
            on_status=on_status,
            interval_ms=interval_ms,
            timeout_ms=timeout_ms,
        )
        if not approved.platform_signature:
            return self.fetch_with_token(approved.provider_endpoint, approved.access_token)
        signature = self.sign_payload({"platformSignature": approved.platform_signature, "requestId": request_id})
        return self.request_data_from_provider(
            approved.provider_endpoint,
            request_id,
            approved.platform_signature,
            signature,
        )

    def sign_payload(self, payload: Any) -> str:
        return self.keys.sign(payload)

    def verify_payload_signature(self, payload: Any, signature: str, public_key: Any = None) -> bool:
        if public_key is None:
            return self.keys.verify(payload, signature)
        return verify_signature(payload, signature, public_key)

    def close(self) -> None:
        self.http.close()

    def __enter__(self) -> "TrustBrokerClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _fetch_status(self, request_id: str) -> Dict[str, Any]:
        if not request_id:
            raise ValueError("request_id is required")
        return self._request("GET", f"/requests/{quote(request_id, safe='')}", None, "get_request_status")

    def _fetch_token(self, request_id: str) -> Dict[str, Any]:
        if not request_id:
            raise ValueError("request_id is required")
        return self._request("GET", f"/requests/{quote(request_id, safe='')}/token", None, "get_request_token")

    def _request(
        self,
        method: str,
        path_with_query: str,
        body: Optional[Dict[str, Any]],
        context: str,
        expect_json: bool = True,
    ) -> Any:
        return self._send(method, self.base_url + path_with_query, body, self.auth, context, ErrorCode.API_ERROR, expect_json)

    def _send(
        self,
        method: str,
        url: str,
        body: Optional[Dict[str, Any]],
        auth: Optional[AuthStrategy],
        context: str,
        error_status: str,
        expect_json: bool = True,
        url_error_status: str = ErrorCode.API_ERROR,
    ) -> Any:
        try:
            body_bytes = stable_json(body) if body is not None else ""
        except (TypeError, ValueError, RecursionError) as exc:
            if isinstance(auth, ClientSignatureAuth):
                raise SigningError(f"{context}: cannot canonicalize body: {exc}") from exc
            raise RequestError(ErrorCode.INVALID_REQUEST, f"{context}: cannot serialize body: {exc}") from exc
        headers: Dict[str, str] = {
            "Accept": "application/json",
            "User-Agent": f"trustbroker-python-sdk/{SDK_VERSION} api/{APIVersion}",
        }
        if body_bytes:
            headers["Content-Type"] = "application/json"
        if auth:
            auth.apply(headers, method, url, body_bytes)
        self.logger.debug("%s %s signed=%s", method, url, SIGNATURE_HEADER in headers)
        try:
            resp = self.http.request(method, url, content=body_bytes.encode("utf-8") if body_bytes else None, headers=headers)
        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as exc:
            raise error_from_transport(exc, context, url_error_status) from exc
        except httpx.HTTPError as exc:
            raise error_from_transport(exc, context, error_status) from exc
        if not 200 <= resp.status_code < 300:
            raise error_from_response(resp, context, error_status)
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as exc:
            if not expect_json:
                return resp.text
            raise invalid_response(context, "response body is not valid JSON") from exc
