from __future__ import annotations

import base64
import hashlib
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Awaitable, Callable
from urllib.parse import quote
from zoneinfo import ZoneInfo

import httpx
from cryptography.fernet import Fernet

from timebox import repositories
from timebox.errors import AuthExpired, CalendarApiError, TransientNetworkFailure
from timebox.schemas import CalendarInfo, RemoteCalendarEvent, TimedEntry
from timebox.services.calendar_colors import google_color_id
from timebox.settings import get_settings

logger = logging.getLogger(__name__)

TOKEN_URL = "https://oauth2.googleapis.com/token"
CALENDAR_API = "https://www.googleapis.com/calendar/v3"

APP_CALENDAR_COLOR = "#7C3AED"
EDITABLE_ROLES = {"owner", "writer"}

TokenGetter = Callable[[], Awaitable["str | None"]]


def _fernet() -> Fernet:
    settings = get_settings()
    if not settings.google_token_encryption_key:
        raise RuntimeError("GOOGLE_TOKEN_ENCRYPTION_KEY is not configured")
    digest = hashlib.sha256(settings.google_token_encryption_key.encode("utf-8")).digest()
    key = base64.urlsafe_b64encode(digest)
    return Fernet(key)


def encrypt_token(value: str) -> str:
    return _fernet().encrypt(value.encode("utf-8")).decode("utf-8")


def decrypt_token(value: str) -> str:
    return _fernet().decrypt(value.encode("utf-8")).decode("utf-8")


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text
    if not isinstance(payload, dict):
        return response.text
    error = payload.get("error")
    if isinstance(error, dict):
        return error.get("message") or response.text
    return payload.get("error_description") or error or payload.get("message") or response.text


def _raise_for_status(response: httpx.Response, action: str) -> None:
    status = response.status_code
    if status < 400:
        return
    message = _error_message(response)
    if status == 401:
        raise AuthExpired(f"Google {action} unauthorized: {message}")
    if status in {408, 429} or status >= 500:
        raise TransientNetworkFailure(f"Google {action} failed ({status}): {message}")
    raise CalendarApiError(f"Google {action} failed ({status}): {message}", status_code=status)


async def store_refresh_token(user_email: str, refresh_token: str) -> None:
    await repositories.store_google_tokens(user_email, encrypt_token(refresh_token))


async def _refresh_access_token(user_email: str, transport: httpx.AsyncBaseTransport | None = None) -> str | None:
    token_row = await repositories.get_google_tokens(user_email)
    if not token_row:
        return None
    refresh_enc = token_row.get("refresh_token_enc")
    if not refresh_enc:
        return None
    refresh_token = decrypt_token(refresh_enc)
    settings = get_settings()
    payload = {
        "client_id": settings.calendar_client_id,
        "client_secret": settings.calendar_client_secret,
        "refresh_token": refresh_token,
        "grant_type": "refresh_token",
    }
    try:
        async with httpx.AsyncClient(timeout=20, transport=transport) as client:
            response = await client.post(TOKEN_URL, data=payload)
    except httpx.TransportError as exc:
        raise TransientNetworkFailure(f"Token refresh failed: {exc}") from exc
    if response.status_code in {400, 401} and "invalid_grant" in response.text:
        raise AuthExpired("Google refresh token was revoked")
    _raise_for_status(response, "token refresh")
    token_data = response.json()
    access_token = token_data.get("access_token")
    if not access_token:
        return None
    expires_in = int(token_data.get("expires_in", 3600) or 3600)
    expires_at = (datetime.now(timezone.utc) + timedelta(seconds=expires_in - 30)).isoformat()
    await repositories.update_google_access_token(user_email, access_token, expires_at, token_data.get("scope"))
    return access_token


async def get_access_token(user_email: str, transport: httpx.AsyncBaseTransport | None = None) -> str | None:
    token_row = await repositories.get_google_tokens(user_email)
    if not token_row:
        return None
    access_token = token_row.get("access_token")
    expires_at = token_row.get("expires_at")
    if access_token and expires_at:
        try:
            expires_dt = datetime.fromisoformat(str(expires_at).replace("Z", "+00:00"))
        except ValueError:
            expires_dt = None
        if expires_dt and expires_dt > datetime.now(timezone.utc):
            return access_token
    return await _refresh_access_token(user_email, transport=transport)


def _parse_datetime(value: str) -> datetime:
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def build_event_payload(entry: TimedEntry, day: date, timezone_name: str) -> dict:
    zone = ZoneInfo(timezone_name)
    start_dt = datetime.combine(day, time(0, 0), tzinfo=zone) + timedelta(hours=entry.start_hour)
    end_dt = start_dt + timedelta(hours=entry.duration_hour)
    payload = {
        "summary": entry.title or "Untitled",
        "colorId": google_color_id(entry.color, entry.tag),
        "start": {"dateTime": start_dt.isoformat(), "timeZone": timezone_name},
        "end": {"dateTime": end_dt.isoformat(), "timeZone": timezone_name},
    }
    if entry.tag:
        payload["description"] = f"Tag: {entry.tag}"
    return payload


def event_from_payload(item: dict, calendar_id: str, calendar_name: str | None, can_edit: bool) -> RemoteCalendarEvent | None:
    """Timed, non-cancelled events only; all-day items have ``date`` instead of ``dateTime``."""
    if item.get("status") == "cancelled":
        return None
    start_raw = (item.get("start") or {}).get("dateTime")
    if not start_raw or not item.get("id"):
        return None
    end_raw = (item.get("end") or {}).get("dateTime") or start_raw
    return RemoteCalendarEvent(
        remote_id=item["id"],
        title=item.get("summary") or "(No title)",
        start=_parse_datetime(start_raw),
        end=_parse_datetime(end_raw),
        color_id=item.get("colorId"),
        calendar_id=calendar_id,
        calendar_name=calendar_name,
        can_edit=can_edit,
    )


class GoogleCalendarClient:
    """Thin async wrapper around the Calendar v3 REST API.

    Every call maps failures onto the timebox error hierarchy: 401 and a
    missing token become ``AuthExpired``, timeouts, 429 and 5xx become
    ``TransientNetworkFailure``, anything else ``CalendarApiError``.
    """

    def __init__(
        self,
        user_email: str,
        token_getter: TokenGetter | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        app_calendar_name: str | None = None,
        app_calendar_id: str | None = None,
        timezone_name: str | None = None,
        timeout: float = 20,
    ):
        settings = get_settings()
        self.user_email = user_email
        self._token_getter = token_getter or (lambda: get_access_token(user_email))
        self._transport = transport
        self.app_calendar_name = app_calendar_name or settings.app_calendar_name
        self.app_calendar_id = app_calendar_id
        self.timezone_name = timezone_name or settings.calendar_timezone
        self.timeout = timeout

    async def _headers(self) -> dict:
        access_token = await self._token_getter()
        if not access_token:
            raise AuthExpired("Google Calendar token unavailable")
        return {"Authorization": f"Bearer {access_token}"}

    async def _request(self, method: str, path: str, action: str, **kwargs) -> httpx.Response:
        headers = await self._headers()
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.request(method, f"{CALENDAR_API}{path}", headers=headers, **kwargs)
        except httpx.TimeoutException as exc:
            raise TransientNetworkFailure(f"Google {action} timed out") from exc
        except httpx.TransportError as exc:
            raise TransientNetworkFailure(f"Google {action} unreachable: {exc}") from exc
        _raise_for_status(response, action)
        return response

    async def list_calendars(self) -> list[CalendarInfo]:
        calendars: list[CalendarInfo] = []
        page_token = None
        while True:
            params = {"pageToken": page_token} if page_token else {}
            response = await self._request("GET", "/users/me/calendarList", "calendar_list", params=params)
            payload = response.json()
            for item in payload.get("items", []):
                calendars.append(
                    CalendarInfo(
                        id=item["id"],
                        summary=item.get("summary") or "",
                        access_role=item.get("accessRole") or "reader",
                        background_color=item.get("backgroundColor"),
                    )
                )
            page_token = payload.get("nextPageToken")
            if not page_token:
                return calendars

    async def list_events(self, calendar_id: str, time_min: datetime, time_max: datetime) -> list[dict]:
        endpoint = f"/calendars/{quote(calendar_id, safe='')}/events"
        items: list[dict] = []
        page_token = None
        while True:
            params = {
                "singleEvents": "true",
                "orderBy": "startTime",
                "maxResults": 250,
                "timeMin": time_min.isoformat(),
                "timeMax": time_max.isoformat(),
            }
            if page_token:
                params["pageToken"] = page_token
            response = await self._request("GET", endpoint, "list_events", params=params)
            payload = response.json()
            items.extend(payload.get("items", []))
            page_token = payload.get("nextPageToken")
            if not page_token:
                return items

    async def fetch_events(self, time_min: datetime, time_max: datetime) -> list[RemoteCalendarEvent]:
        """Fetch timed events from every readable calendar in ``[time_min, time_max)``."""
        calendars = await self.list_calendars()
        app_calendar = self._find_app_calendar(calendars)
        if app_calendar:
            self.app_calendar_id = app_calendar.id
        events: list[RemoteCalendarEvent] = []
        for calendar in calendars:
            if calendar.access_role == "freeBusyReader":
                continue
            is_app_calendar = calendar.id == self.app_calendar_id
            try:
                items = await self.list_events(calendar.id, time_min, time_max)
            except CalendarApiError as exc:
                if exc.status_code == 404:
                    logger.warning("Calendar %s not found, skipping", calendar.summary or calendar.id)
                    continue
                raise
            for item in items:
                event = event_from_payload(
                    item,
                    calendar.id,
                    calendar.summary or None,
                    is_app_calendar or calendar.writable,
                )
                if event is not None:
                    events.append(event)
        logger.info("Fetched %s events from %s calendars", len(events), len(calendars))
        return events

    def _find_app_calendar(self, calendars: list[CalendarInfo]) -> CalendarInfo | None:
        for calendar in calendars:
            if self.app_calendar_id and calendar.id == self.app_calendar_id:
                return calendar
        for calendar in calendars:
            if calendar.summary == self.app_calendar_name:
                return calendar
        return None

    async def ensure_app_calendar(self) -> str:
        if self.app_calendar_id:
            return self.app_calendar_id
        existing = self._find_app_calendar(await self.list_calendars())
        if existing:
            self.app_calendar_id = existing.id
            return existing.id
        response = await self._request(
            "POST",
            "/calendars",
            "create_calendar",
            json={
                "summary": self.app_calendar_name,
                "description": f"Tasks and timeboxes from {self.app_calendar_name}",
                "timeZone": self.timezone_name,
            },
        )
        calendar_id = response.json()["id"]
        try:
            await self._request(
                "PATCH",
                f"/users/me/calendarList/{quote(calendar_id, safe='')}",
                "calendar_color",
                params={"colorRgbFormat": "true"},
                json={"backgroundColor": APP_CALENDAR_COLOR, "foregroundColor": "#FFFFFF"},
            )
        except CalendarApiError:
            logger.info("Could not set color on calendar %s", calendar_id)
        logger.info("Created app calendar %s", calendar_id)
        self.app_calendar_id = calendar_id
        return calendar_id

    async def create_event(self, entry: TimedEntry, day: date) -> tuple[str, str]:
        """Insert into the app calendar; returns ``(calendar_id, event_id)``."""
        payload = build_event_payload(entry, day, self.timezone_name)
        calendar_id = await self.ensure_app_calendar()
        try:
            response = await self._insert(calendar_id, payload)
        except CalendarApiError as exc:
            if exc.status_code != 404:
                raise
            logger.warning("App calendar %s disappeared, recreating", calendar_id)
            self.app_calendar_id = None
            calendar_id = await self.ensure_app_calendar()
            response = await self._insert(calendar_id, payload)
        return calendar_id, response.json()["id"]

    async def _insert(self, calendar_id: str, payload: dict) -> httpx.Response:
        endpoint = f"/calendars/{quote(calendar_id, safe='')}/events"
        return await self._request("POST", endpoint, "create_event", json=payload)

    async def update_event(self, calendar_id: str, event_id: str, entry: TimedEntry, day: date) -> dict:
        endpoint = f"/calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}"
        payload = build_event_payload(entry, day, self.timezone_name)
        response = await self._request("PATCH", endpoint, "update_event", json=payload)
        return response.json()

    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        endpoint = f"/calendars/{quote(calendar_id, safe='')}/events/{quote(event_id, safe='')}"
        try:
            await self._request("DELETE", endpoint, "delete_event")
        except CalendarApiError as exc:
            if exc.status_code in {404, 410}:
                logger.info("Event %s already gone", event_id)
                return
            raise
