"""Mi Fitness (Huami / Zepp) API adapter.

Authenticates either with an app token extracted from the phone app or
with account credentials (two-step Huami token exchange), then pages
through the data endpoints in date windows.

Environment variables:
    MI_FITNESS_APP_TOKEN — Extracted ``apptoken`` (skips credential login)
    MI_FITNESS_EMAIL     — Account e-mail for credential login
    MI_FITNESS_PASSWORD  — Account password for credential login

API base: https://api-mifit-de2.huami.com

Endpoints used (responses are ``{"data": [...]}``, epoch-second times):
    /v1/data/band_data.json — Daily steps, distance (meters), calories
    /v1/data/sleep.json     — Sleep sessions with phase totals (minutes)
    /v1/data/heartrate.json — Heart-rate samples
    /v1/data/weight.json    — Scale readings
"""

from __future__ import annotations

import logging
import secrets
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, AsyncIterator
from uuid import UUID

import httpx

from src.config import get_settings
from src.reconcile.base import DataPoint, ExtractionResult, RecordShape, SourceAdapter
from src.reconcile.config_loader import ReconcileConfig
from src.reconcile.errors import ReconcileError

logger = logging.getLogger("healthsync.reconcile.adapters.mi_fitness")

_TOKEN_URL = "https://api-user.huami.com/registrations/{email}/tokens"
_LOGIN_URL = "https://account.huami.com/v2/client/login"
_REDIRECT_URI = "https://s3-us-west-2.amazonaws.com/hm-registration/successsignin.html"
_USER_AGENT = "MiFit/4.6.0 (iPhone; iOS 14.0; Scale/2.00)"

_BAND_DATA = "/v1/data/band_data.json"
_SLEEP = "/v1/data/sleep.json"
_HEART_RATE = "/v1/data/heartrate.json"
_WEIGHT = "/v1/data/weight.json"

# weight.json key → canonical field
_BODY_FIELDS = {
    "weight": "weight",
    "bmi": "bmi",
    "body_fat": "body_fat_percentage",
    "muscle_mass": "muscle_mass",
    "bone_mass": "bone_mass",
    "water_percentage": "water_percentage",
    "visceral_fat": "visceral_fat",
    "basal_metabolism": "bmr",
}

# sleep.json key → canonical field
_SLEEP_FIELDS = {
    "total_sleep": "sleep_duration",
    "deep_sleep": "deep_sleep",
    "light_sleep": "light_sleep",
    "rem_sleep": "rem_sleep",
    "sleep_score": "sleep_score",
    "efficiency": "sleep_efficiency",
}


class MiFitnessAuthError(ReconcileError):
    """Credential login failed or no credentials are configured."""


@dataclass(frozen=True)
class MiFitnessSession:
    app_token: str
    huami_user_id: str | None = None


class MiFitnessAdapter(SourceAdapter):
    """Mi Fitness API adapter.

    Args:
        config:        Reconciliation policy.
        timezone_name: User's IANA timezone.
        app_token:     Extracted app token (MI_FITNESS_APP_TOKEN).
        email:         Account e-mail for credential login.
        password:      Account password for credential login.
        http_client:   Optional pre-configured httpx client (for testing).
    """

    SOURCE_ID = "mi_fitness"
    DISPLAY_NAME = "Mi Fitness"

    def __init__(
        self,
        config: ReconcileConfig | None = None,
        timezone_name: str | None = None,
        app_token: str | None = None,
        email: str | None = None,
        password: str | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(config, timezone_name)
        settings = get_settings()
        self._app_token = app_token or settings.mi_fitness_app_token
        self._email = email or settings.mi_fitness_email
        self._password = password or settings.mi_fitness_password
        self._api_url = settings.mi_fitness_api_url.rstrip("/")
        self._window_days = settings.mi_fitness_window_days
        self._timeout = settings.http_timeout_seconds
        self._http_client = http_client

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
            return
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            yield client

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def login(self, email: str, password: str) -> MiFitnessSession:
        """Exchange account credentials for an app token.

        Raises:
            MiFitnessAuthError: If either step returns no token.
            httpx.HTTPError:    On network failure.
        """
        headers = {"User-Agent": _USER_AGENT}
        async with self._client() as client:
            response = await client.post(
                _TOKEN_URL.format(email=email),
                data={
                    "state": "REDIRECTION",
                    "client_id": "HuaMi",
                    "redirect_uri": _REDIRECT_URI,
                    "token": "access",
                    "password": password,
                },
                headers=headers,
            )
            access_token = response.json().get("access_token") if response.content else None
            if not access_token:
                raise MiFitnessAuthError("Authentication failed. Check your email and password.")

            response = await client.post(
                _LOGIN_URL,
                data={
                    "app_name": "com.xiaomi.hm.health",
                    "dn": "account.huami.com,api-user.huami.com,api-watch.huami.com,api-mifit.huami.com",
                    "device_id": ":".join(secrets.token_hex(1) for _ in range(6)),
                    "device_model": "android_phone",
                    "app_version": "4.6.0",
                    "grant_type": "access_token",
                    "country_code": "US",
                    "code": access_token,
                },
                headers=headers,
            )
            response.raise_for_status()
            token_info = response.json().get("token_info") or {}

        if not token_info.get("app_token"):
            raise MiFitnessAuthError("Failed to get app token from Mi Fitness login")
        logger.info("Mi Fitness: credential login succeeded")
        return MiFitnessSession(app_token=token_info["app_token"], huami_user_id=token_info.get("user_id"))

    async def _session(self) -> MiFitnessSession:
        if self._app_token:
            return MiFitnessSession(app_token=self._app_token)
        if self._email and self._password:
            session = await self.login(self._email, self._password)
            self._app_token = session.app_token
            return session
        raise MiFitnessAuthError("No Mi Fitness app token or credentials configured")

    # ------------------------------------------------------------------
    # SourceAdapter interface
    # ------------------------------------------------------------------

    async def extract(self, user_id: UUID, origin: Any = None) -> ExtractionResult:
        """Fetch every endpoint for a date range.

        Args:
            user_id: Internal HealthSync user UUID.
            origin:  (start_date, end_date) tuple; defaults to the last
                     ``mi_fitness_window_days`` days up to yesterday.
        """
        result = ExtractionResult(source=self.SOURCE_ID)
        start, end = self._date_range(origin)

        try:
            session = await self._session()
        except (MiFitnessAuthError, httpx.HTTPError) as exc:
            logger.error("Mi Fitness authentication failed for %s: %s", user_id, exc)
            result.errors.append(f"authentication: {exc}")
            return result

        parsers = (
            (_BAND_DATA, self._parse_band_data),
            (_SLEEP, self._parse_sleep),
            (_HEART_RATE, self._parse_heart_rate),
            (_WEIGHT, self._parse_weight),
        )
        for window_start, window_end in self._windows(start, end):
            for endpoint, parser in parsers:
                try:
                    rows = await self._fetch(session, endpoint, window_start, window_end)
                except (httpx.HTTPError, ValueError) as exc:
                    logger.warning("Mi Fitness %s %s..%s failed: %s", endpoint, window_start, window_end, exc)
                    result.errors.append(f"{endpoint} {window_start}..{window_end}: {exc}")
                    continue
                parser(user_id, rows, result)
                result.files_processed += 1

        logger.info("Mi Fitness %s..%s: %d records for %s", start, end, len(result), user_id)
        return result

    def _date_range(self, origin: Any) -> tuple[date, date]:
        if origin:
            start, end = origin
            return start, end
        end = datetime.now(self._tz).date() - timedelta(days=1)
        return end - timedelta(days=self._window_days - 1), end

    def _windows(self, start: date, end: date) -> list[tuple[date, date]]:
        windows = []
        current = start
        while current <= end:
            window_end = min(current + timedelta(days=self._window_days - 1), end)
            windows.append((current, window_end))
            current = window_end + timedelta(days=1)
        return windows

    async def _fetch(self, session: MiFitnessSession, endpoint: str, start: date, end: date) -> list[dict]:
        headers = {
            "apptoken": session.app_token,
            "Content-Type": "application/json",
            "User-Agent": _USER_AGENT,
        }
        params = {"from_date": start.isoformat(), "to_date": end.isoformat()}
        async with self._client() as client:
            response = await client.get(f"{self._api_url}{endpoint}", params=params, headers=headers)
            response.raise_for_status()
            payload = response.json()
        rows = payload.get("data") if isinstance(payload, dict) else None
        return [r for r in rows or [] if isinstance(r, dict)]

    # ------------------------------------------------------------------
    # Endpoint parsers
    # ------------------------------------------------------------------

    def _parse_band_data(self, user_id: UUID, rows: list[dict], result: ExtractionResult) -> None:
        for row in rows:
            stamp = self._safe_float(row.get("date_time"))
            if stamp is None:
                continue
            moment = self._from_epoch(stamp)
            values: dict[str, Any] = {"date": self._local_date(moment).isoformat()}
            for key in ("steps", "distance", "calories"):
                number = self._safe_float(row.get(key))
                if number:
                    values[key] = number
            if len(values) == 1:
                continue
            points = []
            if "steps" in values:
                points.append(
                    self._point(user_id, RecordShape.DAILY_ACTIVITY, "steps", moment, values["steps"])
                )
            result.add(
                self._raw(user_id, RecordShape.DAILY_ACTIVITY, values, recorded_at=moment, origin=_BAND_DATA),
                points,
            )

    def _parse_sleep(self, user_id: UUID, rows: list[dict], result: ExtractionResult) -> None:
        for row in rows:
            start_s = self._safe_float(row.get("start_time"))
            end_s = self._safe_float(row.get("end_time"))
            total = self._safe_float(row.get("total_sleep"))
            if start_s is None or not total:
                continue
            start = self._from_epoch(start_s)
            end = self._from_epoch(end_s) if end_s else None
            values: dict[str, Any] = {
                "date": self._sleep_night(start).isoformat(),
                "start_time": start.isoformat(),
            }
            if end is not None:
                values["end_time"] = end.isoformat()
            for key, canonical in _SLEEP_FIELDS.items():
                number = self._safe_float(row.get(key))
                if number is not None:
                    values[canonical] = number
            result.add(
                self._raw(user_id, RecordShape.SLEEP_SESSION, values, recorded_at=end or start, origin=_SLEEP)
            )

    def _parse_heart_rate(self, user_id: UUID, rows: list[dict], result: ExtractionResult) -> None:
        hr_cfg = self._config.heart_rate
        by_day: dict[date, list[DataPoint]] = defaultdict(list)
        for row in rows:
            stamp = self._safe_float(row.get("timestamp"))
            bpm = self._safe_float(row.get("heart_rate"))
            if stamp is None or bpm is None or not hr_cfg.valid_min_bpm < bpm < hr_cfg.valid_max_bpm:
                continue
            moment = self._from_epoch(stamp)
            by_day[self._local_date(moment)].append(
                self._point(
                    user_id, RecordShape.VITALS, "heart_rate", moment, bpm,
                    metadata={"type": row.get("type", "auto")},
                )
            )
        for day, points in sorted(by_day.items()):
            result.add(self._raw(user_id, RecordShape.VITALS, {"date": day.isoformat()}, origin=_HEART_RATE), points)

    def _parse_weight(self, user_id: UUID, rows: list[dict], result: ExtractionResult) -> None:
        for row in rows:
            stamp = self._safe_float(row.get("timestamp"))
            if stamp is None:
                continue
            moment = self._from_epoch(stamp)
            values: dict[str, Any] = {"date": self._local_date(moment).isoformat()}
            for key, canonical in _BODY_FIELDS.items():
                number = self._safe_float(row.get(key))
                if number:
                    values[canonical] = number
            if "weight" not in values:
                continue
            point = self._point(user_id, RecordShape.BODY_COMPOSITION, "weight", moment, values["weight"])
            result.add(
                self._raw(user_id, RecordShape.BODY_COMPOSITION, values, recorded_at=moment, origin=_WEIGHT),
                [point],
            )
