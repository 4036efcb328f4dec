from __future__ import annotations

import asyncio
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import cachecontrol
import google.auth.transport.requests
import httpx
import requests
from google.auth import exceptions as google_exceptions
from google.auth import jwt as google_jwt
from google.oauth2 import id_token as google_id_token
from google.oauth2 import service_account

from authgate.identity.base import ExternalUser, TokenBundle, VerifiedToken
from authgate.identity.errors import ErrorKind, IdentityProviderError, translate_provider_error
from authgate.logging import get_logger

logger = get_logger(__name__)

IDENTITY_TOOLKIT_URL = "https://identitytoolkit.googleapis.com/v1"
SECURE_TOKEN_URL = "https://securetoken.googleapis.com/v1/token"
OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
ADMIN_SCOPES = [
    "https://www.googleapis.com/auth/identitytoolkit",
    "https://www.googleapis.com/auth/cloud-platform",
]
_CLOCK_SKEW_SECONDS = 300


def _ms_to_iso(raw: Any) -> Optional[str]:
    if raw in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(int(raw) / 1000, tz=timezone.utc).isoformat()
    except (TypeError, ValueError):
        return None


def _timestamp(payload: Dict[str, Any], claim: str) -> datetime:
    try:
        return datetime.fromtimestamp(float(payload[claim]), tz=timezone.utc)
    except (KeyError, TypeError, ValueError, OverflowError, OSError) as exc:
        raise IdentityProviderError(
            ErrorKind.TOKEN_INVALID, raw_code="INVALID_TIMESTAMP"
        ) from exc


def _default_auth_request() -> google.auth.transport.requests.Request:
    """Request adapter for google-auth; the session honours Cache-Control on signing certs."""
    session = cachecontrol.CacheControl(requests.Session())
    return google.auth.transport.requests.Request(session=session)


def _verification_error(exc: Exception) -> IdentityProviderError:
    # google-auth reports every claim failure as ValueError with a fixed message prefix
    message = str(exc)
    if message.startswith("Token expired"):
        return IdentityProviderError(ErrorKind.TOKEN_EXPIRED, raw_code="TOKEN_EXPIRED")
    if "wrong audience" in message:
        return IdentityProviderError(ErrorKind.TOKEN_INVALID, raw_code="INVALID_AUDIENCE")
    if "key id" in message:
        return IdentityProviderError(ErrorKind.TOKEN_INVALID, raw_code="UNKNOWN_KEY_ID")
    if "signature" in message:
        return IdentityProviderError(ErrorKind.TOKEN_INVALID, raw_code="INVALID_SIGNATURE")
    return IdentityProviderError(ErrorKind.TOKEN_INVALID, raw_code="INVALID_ID_TOKEN")


class FirebaseIdentityClient:
    """Firebase Authentication over the Identity Toolkit REST API.

    Public endpoints (sign-up, sign-in, refresh, out-of-band codes) use the
    web API key. Admin endpoints (lookup, create, update, delete) use an
    OAuth access token minted by google-auth from the service account. ID
    tokens are verified with ``google.oauth2.id_token.verify_firebase_token``.

    With ``emulator_host`` set, all calls go to the Auth emulator, admin calls
    authenticate as ``owner`` and ID token signatures are not checked.
    """

    def __init__(
        self,
        *,
        project_id: str,
        api_key: Optional[str] = None,
        client_email: Optional[str] = None,
        private_key: Optional[str] = None,
        emulator_host: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        auth_request: Optional[Callable[..., Any]] = None,
    ) -> None:
        self.project_id = project_id
        self.api_key = api_key or ("fake-api-key" if emulator_host else None)
        self.client_email = client_email
        self.private_key = private_key
        self.emulator_host = emulator_host
        if emulator_host:
            self.toolkit_url = f"http://{emulator_host}/identitytoolkit.googleapis.com/v1"
            self.secure_token_url = f"http://{emulator_host}/securetoken.googleapis.com/v1/token"
        else:
            self.toolkit_url = IDENTITY_TOOLKIT_URL
            self.secure_token_url = SECURE_TOKEN_URL
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)
        self._auth_request = auth_request or _default_auth_request()
        # The requests session behind google-auth is not thread safe
        self._session_lock = threading.RLock()
        self._token_lock = asyncio.Lock()
        self._credentials: Optional[service_account.Credentials] = None

    @property
    def admin_configured(self) -> bool:
        return bool(self.emulator_host or (self.client_email and self.private_key))

    # transport helpers
    async def _post(
        self,
        url: str,
        *,
        json_body: Optional[Dict[str, Any]] = None,
        form: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, str]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        try:
            response = await self.client.post(
                url, json=json_body, data=form, params=params, headers=headers
            )
        except httpx.HTTPError as exc:
            logger.error("identity_provider_transport_error", url=url, error=str(exc))
            raise IdentityProviderError(
                ErrorKind.DEPENDENCY_UNAVAILABLE, raw_code=type(exc).__name__
            ) from exc
        try:
            data = response.json()
        except ValueError:
            data = {}
        if response.status_code >= 400:
            error = data.get("error") if isinstance(data, dict) else None
            raw = None
            if isinstance(error, dict):
                raw = error.get("message")
            elif isinstance(error, str):
                raw = error.upper()
            translated = translate_provider_error(raw, status_code=response.status_code)
            logger.info(
                "identity_provider_error",
                status_code=response.status_code,
                raw_code=translated.raw_code,
                kind=translated.kind.value,
            )
            raise translated
        return data if isinstance(data, dict) else {}

    def _public_params(self) -> Dict[str, str]:
        if not self.api_key:
            raise IdentityProviderError(
                ErrorKind.DEPENDENCY_UNAVAILABLE, "Identity provider API key not configured"
            )
        return {"key": self.api_key}

    async def _admin_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {await self._get_access_token()}"}

    def _service_account(self) -> service_account.Credentials:
        if self._credentials is None:
            try:
                self._credentials = service_account.Credentials.from_service_account_info(
                    {
                        "type": "service_account",
                        "project_id": self.project_id,
                        "client_email": self.client_email,
                        "private_key": self.private_key,
                        "token_uri": OAUTH_TOKEN_URL,
                    },
                    scopes=ADMIN_SCOPES,
                )
            except (google_exceptions.GoogleAuthError, ValueError) as exc:
                logger.error("identity_service_account_invalid", error=str(exc))
                raise IdentityProviderError(
                    ErrorKind.DEPENDENCY_UNAVAILABLE,
                    "Identity provider service account is invalid",
                ) from exc
        return self._credentials

    def _call_google(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        with self._session_lock:
            return fn(*args, **kwargs)

    async def _get_access_token(self) -> str:
        if self.emulator_host:
            return "owner"
        if not (self.client_email and self.private_key):
            raise IdentityProviderError(
                ErrorKind.DEPENDENCY_UNAVAILABLE,
                "Identity provider service account not configured",
            )
        async with self._token_lock:
            credentials = self._service_account()
            if credentials.valid:
                return credentials.token
            try:
                await asyncio.to_thread(
                    self._call_google, credentials.refresh, self._auth_request
                )
            except (google_exceptions.GoogleAuthError, ValueError) as exc:
                logger.error("identity_admin_token_failed", error=str(exc))
                raise IdentityProviderError(
                    ErrorKind.DEPENDENCY_UNAVAILABLE,
                    "Service account token exchange failed",
                    raw_code=type(exc).__name__,
                ) from exc
            logger.info("identity_admin_token_refreshed")
            return credentials.token

    def _admin_url(self, action: str) -> str:
        return f"{self.toolkit_url}/projects/{self.project_id}/{action}"

    @staticmethod
    def _bundle(data: Dict[str, Any]) -> TokenBundle:
        return TokenBundle(
            id_token=data.get("idToken") or data.get("id_token") or "",
            refresh_token=data.get("refreshToken") or data.get("refresh_token") or "",
            expires_in=int(data.get("expiresIn") or data.get("expires_in") or 3600),
            external_id=data.get("localId") or data.get("user_id"),
            email=data.get("email"),
        )

    @staticmethod
    def _user_from_record(record: Dict[str, Any]) -> ExternalUser:
        providers = record.get("providerUserInfo") or []
        provider_id = providers[0].get("providerId") if providers else "password"
        valid_since = record.get("validSince")
        tokens_valid_after = (
            datetime.fromtimestamp(int(valid_since), tz=timezone.utc) if valid_since else None
        )
        return ExternalUser(
            id=record["localId"],
            email=record.get("email"),
            display_name=record.get("displayName"),
            photo_url=record.get("photoUrl"),
            phone_number=record.get("phoneNumber"),
            email_verified=bool(record.get("emailVerified", False)),
            disabled=bool(record.get("disabled", False)),
            provider_id=provider_id or "password",
            created_at=_ms_to_iso(record.get("createdAt")),
            last_sign_in_at=_ms_to_iso(record.get("lastLoginAt")),
            tokens_valid_after=tokens_valid_after,
        )

    async def _lookup(self, body: Dict[str, Any]) -> Optional[ExternalUser]:
        data = await self._post(
            self._admin_url("accounts:lookup"),
            json_body=body,
            headers=await self._admin_headers(),
        )
        users = data.get("users") or []
        if not users:
            return None
        return self._user_from_record(users[0])

    # credential flows
    async def sign_up(self, email: str, password: str) -> TokenBundle:
        data = await self._post(
            f"{self.toolkit_url}/accounts:signUp",
            json_body={"email": email, "password": password, "returnSecureToken": True},
            params=self._public_params(),
        )
        return self._bundle(data)

    async def sign_in(self, email: str, password: str) -> TokenBundle:
        data = await self._post(
            f"{self.toolkit_url}/accounts:signInWithPassword",
            json_body={"email": email, "password": password, "returnSecureToken": True},
            params=self._public_params(),
        )
        return self._bundle(data)

    async def refresh_token(self, refresh_token: str) -> TokenBundle:
        data = await self._post(
            self.secure_token_url,
            form={"grant_type": "refresh_token", "refresh_token": refresh_token},
            params=self._public_params(),
        )
        return self._bundle(data)

    # ID token verification
    async def _decode_verified(self, id_token: str) -> Dict[str, Any]:
        try:
            if self.emulator_host:
                # The emulator issues unsigned tokens
                return google_jwt.decode(id_token, verify=False)
            return await asyncio.to_thread(
                self._call_google,
                google_id_token.verify_firebase_token,
                id_token,
                self._auth_request,
                audience=self.project_id,
                clock_skew_in_seconds=_CLOCK_SKEW_SECONDS,
            )
        except google_exceptions.TransportError as exc:
            logger.error("identity_certs_fetch_failed", error=str(exc))
            raise IdentityProviderError(ErrorKind.DEPENDENCY_UNAVAILABLE) from exc
        except (google_exceptions.GoogleAuthError, ValueError, TypeError) as exc:
            translated = _verification_error(exc)
            logger.info("id_token_rejected", raw_code=translated.raw_code)
            raise translated from exc

    def _check_claims(self, payload: Dict[str, Any]) -> None:
        if not isinstance(payload, dict):
            raise IdentityProviderError(ErrorKind.TOKEN_INVALID, raw_code="MALFORMED_ID_TOKEN")
        if payload.get("aud") != self.project_id:
            raise IdentityProviderError(ErrorKind.TOKEN_INVALID, raw_code="INVALID_AUDIENCE")
        if payload.get("iss") != f"https://securetoken.google.com/{self.project_id}":
            raise IdentityProviderError(ErrorKind.TOKEN_INVALID, raw_code="INVALID_ISSUER")
        sub = payload.get("sub")
        if not isinstance(sub, str) or not sub or len(sub) > 128:
            raise IdentityProviderError(ErrorKind.TOKEN_INVALID, raw_code="INVALID_SUBJECT")
        now = datetime.now(timezone.utc)
        if _timestamp(payload, "exp") <= now:
            raise IdentityProviderError(ErrorKind.TOKEN_EXPIRED, raw_code="TOKEN_EXPIRED")
        if (_timestamp(payload, "iat") - now).total_seconds() > _CLOCK_SKEW_SECONDS:
            raise IdentityProviderError(ErrorKind.TOKEN_INVALID, raw_code="ISSUED_IN_FUTURE")

    async def verify_token(
        self, id_token: str, *, check_revoked: bool = False
    ) -> VerifiedToken:
        if not id_token or not isinstance(id_token, str):
            raise IdentityProviderError(ErrorKind.TOKEN_INVALID, raw_code="MALFORMED_ID_TOKEN")
        payload = await self._decode_verified(id_token)
        self._check_claims(payload)
        auth_time = _timestamp(payload, "auth_time" if "auth_time" in payload else "iat")
        if check_revoked:
            user = await self.get_user(payload["sub"])
            if user.disabled:
                raise IdentityProviderError(ErrorKind.TOKEN_REVOKED, raw_code="USER_DISABLED")
            if user.tokens_valid_after and auth_time < user.tokens_valid_after:
                raise IdentityProviderError(ErrorKind.TOKEN_REVOKED, raw_code="TOKEN_REVOKED")
        return VerifiedToken(
            external_id=payload["sub"],
            email=payload.get("email"),
            email_verified=bool(payload.get("email_verified", False)),
            issued_at=_timestamp(payload, "iat"),
            expires_at=_timestamp(payload, "exp"),
            auth_time=auth_time,
            claims=payload,
        )

    # admin operations
    async def get_user(self, external_id: str) -> ExternalUser:
        user = await self._lookup({"localId": [external_id]})
        if user is None:
            raise IdentityProviderError(ErrorKind.NOT_FOUND, raw_code="USER_NOT_FOUND")
        return user

    async def get_user_by_email(self, email: str) -> Optional[ExternalUser]:
        return await self._lookup({"email": [email]})

    async def create_user(
        self,
        *,
        email: str,
        password: str,
        display_name: Optional[str] = None,
        disabled: bool = False,
    ) -> ExternalUser:
        body: Dict[str, Any] = {"email": email, "password": password, "disabled": disabled}
        if display_name:
            body["displayName"] = display_name
        data = await self._post(
            self._admin_url("accounts"),
            json_body=body,
            headers=await self._admin_headers(),
        )
        external_id = data.get("localId")
        if not external_id:
            raise IdentityProviderError(
                ErrorKind.DEPENDENCY_UNAVAILABLE, "Identity provider returned no user id"
            )
        return await self.get_user(external_id)

    async def update_user(self, external_id: str, **fields: Any) -> ExternalUser:
        body: Dict[str, Any] = {"localId": external_id}
        delete_attributes: List[str] = []
        for key, attribute, delete_name in (
            ("display_name", "displayName", "DISPLAY_NAME"),
            ("photo_url", "photoUrl", "PHOTO_URL"),
        ):
            if key in fields:
                value = fields.pop(key)
                if value is None:
                    delete_attributes.append(delete_name)
                else:
                    body[attribute] = value
        if "email" in fields:
            body["email"] = fields.pop("email")
        if "password" in fields:
            body["password"] = fields.pop("password")
        if "disabled" in fields:
            body["disableUser"] = bool(fields.pop("disabled"))
        if "email_verified" in fields:
            body["emailVerified"] = bool(fields.pop("email_verified"))
        if fields:
            raise IdentityProviderError(
                ErrorKind.VALIDATION, f"Unsupported fields: {', '.join(sorted(fields))}"
            )
        if delete_attributes:
            body["deleteAttribute"] = delete_attributes
        await self._post(
            self._admin_url("accounts:update"),
            json_body=body,
            headers=await self._admin_headers(),
        )
        return await self.get_user(external_id)

    async def delete_user(self, external_id: str) -> None:
        await self._post(
            self._admin_url("accounts:delete"),
            json_body={"localId": external_id},
            headers=await self._admin_headers(),
        )

    async def revoke_tokens(self, external_id: str) -> None:
        await self._post(
            self._admin_url("accounts:update"),
            json_body={"localId": external_id, "validSince": str(int(time.time()))},
            headers=await self._admin_headers(),
        )

    # out-of-band flows
    async def send_password_reset_email(self, email: str) -> None:
        await self._post(
            f"{self.toolkit_url}/accounts:sendOobCode",
            json_body={"requestType": "PASSWORD_RESET", "email": email},
            params=self._public_params(),
        )

    async def reset_password(self, oob_code: str, new_password: str) -> str:
        data = await self._post(
            f"{self.toolkit_url}/accounts:resetPassword",
            json_body={"oobCode": oob_code, "newPassword": new_password},
            params=self._public_params(),
        )
        return data.get("email", "")

    async def close(self) -> None:
        await self.client.aclose()
        session = getattr(self._auth_request, "session", None)
        if session is not None:
            session.close()
