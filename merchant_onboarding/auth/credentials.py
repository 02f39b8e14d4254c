"""
Credential lifecycle: bearer attachment, 401/403 recovery and single-flight
token refresh.

Concurrency contract: many coroutines may discover an expired access token at
the same time. The first one to ask for a refresh starts it as a task; every
later caller awaits that same task (shielded, so one impatient caller can't
cancel it for everybody). Each token replacement bumps `_version`, which lets a
call whose 401 came from an already-replaced token retry straight away
instead of refreshing a second time.
"""
import asyncio
import time
from typing import Any, Dict, Optional, Sequence

from pydantic import ValidationError as SchemaError

from merchant_onboarding.settings import settings
from merchant_onboarding.api.schemas import RefreshRequest, RefreshResponse
from merchant_onboarding.errors import (
    HttpStatusError,
    NetworkError,
    SessionExpiredHard,
    SessionExpiredSoft,
)
from merchant_onboarding.events.bus import EventBus, ForcedLogout, SessionExpired
from merchant_onboarding.navigation import Navigator, is_public_path
from merchant_onboarding.observability import metrics
from merchant_onboarding.observability.logging import log
from merchant_onboarding.store.credential_repo import CredentialRepo
from merchant_onboarding.store.models import CredentialPair
from merchant_onboarding.transport.http import HttpTransport

# Refresh endpoint answers meaning "this refresh token is no good"
_REFRESH_REJECTED = (400, 401, 403)


class CredentialLifecycleManager:
    def __init__(
        self,
        transport: HttpTransport,
        *,
        repo: Optional[CredentialRepo] = None,
        bus: Optional[EventBus] = None,
        navigator: Optional[Navigator] = None,
        refresh_path: Optional[str] = None,
        login_path: Optional[str] = None,
        public_prefixes: Optional[Sequence[str]] = None,
    ):
        self.transport = transport
        self.repo = repo or CredentialRepo()
        self.bus = bus or EventBus()
        self.navigator = navigator
        self.refresh_path = refresh_path or settings.AUTH_REFRESH_PATH
        self.login_path = login_path or settings.LOGIN_PATH
        self.public_prefixes = tuple(public_prefixes) if public_prefixes is not None else settings.public_path_prefixes

        self._pair: Optional[CredentialPair] = self.repo.load()
        self._version = 0
        self._refresh_task: Optional[asyncio.Task] = None
        self._logged_out = False

    # --- state ---

    @property
    def access_token(self) -> Optional[str]:
        return self._pair.accessToken if self._pair and self._pair.accessToken else None

    @property
    def refresh_token(self) -> Optional[str]:
        return self._pair.refreshToken if self._pair and self._pair.refreshToken else None

    @property
    def is_authenticated(self) -> bool:
        return self.access_token is not None

    @property
    def refresh_in_flight(self) -> bool:
        return self._refresh_task is not None

    def set_credentials(self, pair: CredentialPair, **identity: str) -> None:
        """Install a freshly issued pair (login / OTP verification)."""
        self._replace_pair(pair)
        self.repo.save_identity(**identity)
        self._logged_out = False
        log(event="credentials_set", hasRefreshToken=bool(pair.refreshToken))

    def _replace_pair(self, pair: Optional[CredentialPair]) -> None:
        self._pair = pair
        self._version += 1
        if pair is not None:
            self.repo.save(pair)

    # --- authenticated calls ---

    async def _send(self, method: str, path: str, token: Optional[str], kwargs: Dict[str, Any]) -> Any:
        headers = dict(kwargs.get("headers") or {})
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return await self.transport.request(
            method, path, json=kwargs.get("json"), params=kwargs.get("params"), headers=headers
        )

    async def call(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        kwargs = {"json": json, "params": params, "headers": headers}
        sent_version = self._version
        try:
            return await self._send(method, path, self.access_token, kwargs)
        except HttpStatusError as e:
            if e.status == 401:
                return await self._recover_unauthorized(e, method, path, kwargs, sent_version)
            if e.status == 403:
                return await self._recover_forbidden(e, method, path, kwargs, sent_version)
            raise

    async def get(self, path: str, **kwargs) -> Any:
        return await self.call("GET", path, **kwargs)

    async def post(self, path: str, json: Any = None, **kwargs) -> Any:
        return await self.call("POST", path, json=json, **kwargs)

    async def put(self, path: str, json: Any = None, **kwargs) -> Any:
        return await self.call("PUT", path, json=json, **kwargs)

    async def delete(self, path: str, **kwargs) -> Any:
        return await self.call("DELETE", path, **kwargs)

    async def _recover_unauthorized(self, err, method, path, kwargs, sent_version) -> Any:
        if sent_version == self._version:
            if not self.refresh_token:
                self._expire_hard("missing_refresh_token", path)
                raise SessionExpiredHard("Session expired") from err
            await self.refresh()
        elif not self.access_token:
            # Replaced by a logout while this call was in flight
            raise SessionExpiredHard("Session expired") from err

        log(event="credential_retry_after_refresh", method=method, path=path, statusCode=401)
        try:
            return await self._send(method, path, self.access_token, kwargs)
        except HttpStatusError as retry_err:
            if retry_err.status == 401:
                self._expire_hard("unauthorized_after_refresh", path)
                raise SessionExpiredHard("Session expired") from retry_err
            raise

    async def _recover_forbidden(self, err, method, path, kwargs, sent_version) -> Any:
        if not self.access_token and sent_version == self._version:
            self._notify_soft("forbidden_without_token", path)
            raise SessionExpiredSoft("Access forbidden") from err

        if sent_version == self._version:
            if not self.refresh_token:
                self._notify_soft("forbidden_without_refresh_token", path)
                raise SessionExpiredSoft("Access forbidden") from err
            await self.refresh()

        log(event="credential_retry_after_refresh", method=method, path=path, statusCode=403)
        try:
            return await self._send(method, path, self.access_token, kwargs)
        except HttpStatusError as retry_err:
            if retry_err.status == 403:
                self._notify_soft("forbidden_after_refresh", path)
                raise SessionExpiredSoft("Access forbidden") from retry_err
            if retry_err.status == 401:
                self._expire_hard("unauthorized_after_refresh", path)
                raise SessionExpiredHard("Session expired") from retry_err
            raise

    # --- refresh ---

    async def refresh(self) -> CredentialPair:
        """
        Single-flight: concurrent callers share one refresh request. On failure
        credentials are cleared (once) and every waiter gets the exception.
        """
        task = self._refresh_task
        if task is None:
            task = asyncio.get_running_loop().create_task(self._do_refresh(), name="credential-refresh")
            # Mark the outcome retrieved even if every waiter was cancelled
            task.add_done_callback(lambda t: t.cancelled() or t.exception())
            self._refresh_task = task
        else:
            log(event="credential_refresh_joined")
        return await asyncio.shield(task)

    async def _do_refresh(self) -> CredentialPair:
        try:
            refresh_token = self.refresh_token
            if not refresh_token:
                self._refresh_failed("missing_refresh_token")
                raise SessionExpiredHard("No refresh token available")

            metrics.increment_refresh_attempt()
            start = time.time()
            log(event="credential_refresh_started")
            try:
                body = await self.transport.request(
                    "POST", self.refresh_path, json=RefreshRequest(refreshToken=refresh_token).model_dump()
                )
                parsed = RefreshResponse.model_validate(body)
            except HttpStatusError as e:
                self._refresh_failed(f"status_{e.status}")
                if e.status in _REFRESH_REJECTED:
                    raise SessionExpiredHard("Refresh token rejected") from e
                raise
            except NetworkError:
                self._refresh_failed("network_error")
                raise
            except SchemaError as e:
                self._refresh_failed("malformed_response")
                raise SessionExpiredHard("Malformed refresh response") from e

            pair = CredentialPair(
                accessToken=parsed.accessToken,
                refreshToken=parsed.refreshToken or refresh_token,
            )
            self._replace_pair(pair)
            elapsed_ms = int((time.time() - start) * 1000)
            metrics.increment_refresh_success()
            metrics.record_refresh_latency(elapsed_ms)
            log(event="credential_refresh_succeeded", elapsedMs=elapsed_ms, rotated=bool(parsed.refreshToken))
            return pair
        finally:
            self._refresh_task = None

    def _refresh_failed(self, reason: str) -> None:
        metrics.increment_refresh_failed()
        log(event="credential_refresh_failed", reason=reason)
        self.force_logout(f"refresh_failed:{reason}")

    # --- expiry / logout ---

    def _expire_hard(self, reason: str, path: str = "") -> None:
        log(event="session_expired", kind="hard", reason=reason, path=path)
        self.bus.publish(SessionExpired(kind="hard", reason=reason))
        self.force_logout(reason)

    def _notify_soft(self, reason: str, path: str = "") -> None:
        log(event="session_expired", kind="soft", reason=reason, path=path)
        self.bus.publish(SessionExpired(kind="soft", reason=reason))

    def force_logout(self, reason: str = "") -> bool:
        """
        Clear tokens and identity, publish ForcedLogout and redirect to the
        login path unless the navigator is already on a public surface.
        Returns False when the session was already logged out.
        """
        if self._logged_out:
            log(event="forced_logout_skipped", reason=reason)
            return False
        self._logged_out = True
        self._replace_pair(None)
        self.repo.clear()
        metrics.increment_forced_logout()

        redirected = False
        if self.navigator is not None:
            current = self.navigator.current_path
            if not is_public_path(current, self.public_prefixes):
                self.navigator.navigate(self.login_path, replace=True)
                redirected = True
        log(event="forced_logout", reason=reason, redirected=redirected)
        self.bus.publish(ForcedLogout(reason=reason))
        return True
