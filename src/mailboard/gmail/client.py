"""Gmail API client implementation.

This module provides a client for interacting with the Gmail API.

Notes:
    The Google API client is synchronous. This project wraps those calls using
    `asyncio.to_thread` so the rest of the codebase can remain async-friendly.
    Failures are classified into the sync error taxonomy: a missing label is an
    ``InvalidMappingError``, quota and server trouble is a ``TransientSyncError``,
    and everything else is a ``GmailAPIError``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

import structlog

from mailboard.config import Settings
from mailboard.exceptions import (
    AuthenticationError,
    ConfigurationError,
    GmailAPIError,
    HistoryExpiredError,
    InvalidMappingError,
    MailboardError,
    TransientSyncError,
)

logger = structlog.get_logger()

T = TypeVar("T")

_LABEL_ERROR_MARKERS = (
    "label not found",
    "invalid label",
    "invalidlabelid",
    "label does not exist",
    "labelid not found",
)
_RATE_LIMIT_MARKERS = ("ratelimitexceeded", "userratelimitexceeded", "quota")

METADATA_HEADERS = ["Subject", "From", "Date"]


def classify_error(exc: Exception, *, mapping: str | None = None) -> MailboardError:
    """Map a Google API or transport failure onto the sync error taxonomy.

    Args:
        exc: The exception raised by the Google API client.
        mapping: Label ID involved in the call, attached to ``InvalidMappingError``.
    """

    from googleapiclient.errors import HttpError

    if isinstance(exc, MailboardError):
        return exc

    if isinstance(exc, HttpError):
        status = int(getattr(exc.resp, "status", 0) or 0)
        text = str(exc).lower()
        compact = text.replace(" ", "")

        if status == 404 or any(marker in text for marker in _LABEL_ERROR_MARKERS):
            return InvalidMappingError(str(exc), mapping=mapping)
        if status == 429 or status >= 500:
            return TransientSyncError(str(exc))
        if status == 403 and any(marker in compact for marker in _RATE_LIMIT_MARKERS):
            return TransientSyncError(str(exc))
        return GmailAPIError(str(exc))

    # socket.timeout is an alias of TimeoutError; both are OSErrors.
    if isinstance(exc, (TimeoutError, ConnectionError, OSError)):
        return TransientSyncError(str(exc) or exc.__class__.__name__)

    return GmailAPIError(str(exc))


class GmailClient:
    """Gmail API client for label and message operations.

    This client handles authentication, paged message listing, label
    changes and history polling.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        """Initialize Gmail client.

        Args:
            settings: Application settings. If None, uses default settings.
        """
        from mailboard.config import get_settings

        self.settings = settings or get_settings()
        self._service: Any | None = None
        logger.info("gmail_client_initialized")

    @property
    def user_id(self) -> str:
        return self.settings.gmail_user_id

    async def authenticate(self) -> None:
        """Authenticate with Gmail API using OAuth2.

        Raises:
            ConfigurationError: If the credentials file is missing.
            AuthenticationError: If authentication fails.
        """

        if self._service is not None:
            return

        credentials_path = Path(self.settings.gmail_credentials_path)
        token_path = Path(self.settings.gmail_token_path)
        scope = self.settings.gmail_scope

        if not credentials_path.exists():
            raise ConfigurationError(
                f"Gmail credentials file not found: {credentials_path}. "
                "See README.md -> Gmail API Setup."
            )

        logger.info(
            "gmail_authentication_started",
            credentials_path=str(credentials_path),
            token_path=str(token_path),
            scope=scope,
        )

        try:
            self._service = await asyncio.to_thread(
                self._build_service,
                credentials_path,
                token_path,
                scope,
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("gmail_authentication_failed", error=str(exc))
            raise AuthenticationError(str(exc)) from exc

        logger.info("gmail_authentication_completed")

    async def list_messages_page(
        self,
        *,
        label_ids: list[str] | None = None,
        query: str | None = None,
        page_token: str | None = None,
        max_results: int | None = None,
    ) -> dict[str, Any]:
        """List one page of message references.

        Args:
            label_ids: Only return messages carrying all of these labels.
            query: Gmail search query string.
            page_token: Token from a previous page.
            max_results: Page size. Defaults to ``settings.gmail_page_size``.

        Returns:
            The raw response with ``messages`` and ``nextPageToken``.
        """

        per_page = max_results or self.settings.gmail_page_size
        logger.info(
            "listing_messages_page",
            label_ids=label_ids,
            query=query,
            max_results=per_page,
            has_page_token=page_token is not None,
        )
        mapping = label_ids[0] if label_ids else None
        return await self._call(
            "list_messages_page",
            lambda service: service.users()
            .messages()
            .list(
                userId=self.user_id,
                labelIds=label_ids,
                q=query,
                pageToken=page_token,
                maxResults=per_page,
            )
            .execute(),
            mapping=mapping,
        )

    async def get_message(
        self,
        message_id: str,
        *,
        format: str = "metadata",
        metadata_headers: list[str] | None = None,
    ) -> dict[str, Any]:
        """Get a specific message by ID.

        Args:
            message_id: The Gmail message ID.

        Returns:
            Message data dictionary.
        """

        headers = metadata_headers if metadata_headers is not None else METADATA_HEADERS
        return await self._call(
            "get_message",
            lambda service: service.users()
            .messages()
            .get(userId=self.user_id, id=message_id, format=format, metadataHeaders=headers)
            .execute(),
        )

    async def modify_labels(
        self,
        message_id: str,
        *,
        add: list[str] | None = None,
        remove: list[str] | None = None,
        thread_id: str | None = None,
    ) -> dict[str, Any]:
        """Add and remove labels on a message, or on its whole thread if given."""

        body = {"addLabelIds": add or [], "removeLabelIds": remove or []}
        mapping = (add or remove or [None])[0]
        logger.info(
            "modifying_labels",
            message_id=message_id,
            thread_id=thread_id,
            add=body["addLabelIds"],
            remove=body["removeLabelIds"],
        )

        if thread_id:
            return await self._call(
                "modify_thread_labels",
                lambda service: service.users()
                .threads()
                .modify(userId=self.user_id, id=thread_id, body=body)
                .execute(),
                mapping=mapping,
            )
        return await self._call(
            "modify_labels",
            lambda service: service.users()
            .messages()
            .modify(userId=self.user_id, id=message_id, body=body)
            .execute(),
            mapping=mapping,
        )

    async def trash_message(self, message_id: str) -> dict[str, Any]:
        logger.info("trashing_message", message_id=message_id)
        return await self._call(
            "trash_message",
            lambda service: service.users().messages().trash(userId=self.user_id, id=message_id).execute(),
        )

    async def list_labels(self) -> list[dict[str, Any]]:
        response = await self._call(
            "list_labels",
            lambda service: service.users().labels().list(userId=self.user_id).execute(),
        )
        return list(response.get("labels", []) or [])

    async def create_label(self, name: str, *, color: str | None = None) -> dict[str, Any]:
        """Create a user label.

        Args:
            name: Label name.
            color: Optional background color as ``#rrggbb``. Gmail only accepts a fixed
                palette, so unknown colors are rejected by the API.
        """

        body: dict[str, Any] = {
            "name": name,
            "labelListVisibility": "labelShow",
            "messageListVisibility": "show",
        }
        if color:
            body["color"] = {"backgroundColor": color, "textColor": "#ffffff"}

        logger.info("creating_label", name=name, color=color)
        return await self._call(
            "create_label",
            lambda service: service.users().labels().create(userId=self.user_id, body=body).execute(),
        )

    async def get_profile(self) -> dict[str, Any]:
        return await self._call(
            "get_profile",
            lambda service: service.users().getProfile(userId=self.user_id).execute(),
        )

    async def list_history(
        self,
        start_history_id: str,
        *,
        page_token: str | None = None,
    ) -> dict[str, Any]:
        """List one page of mailbox history since ``start_history_id``.

        Raises:
            HistoryExpiredError: If the start history id is too old.
        """

        from googleapiclient.errors import HttpError

        await self._ensure_authenticated()
        try:
            return await asyncio.to_thread(
                lambda: self._service.users()  # type: ignore[union-attr]
                .history()
                .list(
                    userId=self.user_id,
                    startHistoryId=start_history_id,
                    historyTypes=["messageAdded", "messageDeleted", "labelAdded", "labelRemoved"],
                    pageToken=page_token,
                    maxResults=500,
                )
                .execute()
            )
        except HttpError as exc:
            if int(getattr(exc.resp, "status", 0) or 0) in (404, 410):
                raise HistoryExpiredError(str(exc)) from exc
            raise self._wrap("list_history", exc) from exc
        except Exception as exc:  # noqa: BLE001
            raise self._wrap("list_history", exc) from exc

    async def _call(
        self,
        operation: str,
        request: Callable[[Any], T],
        *,
        mapping: str | None = None,
    ) -> T:
        await self._ensure_authenticated()
        try:
            return await asyncio.to_thread(request, self._service)
        except Exception as exc:  # noqa: BLE001
            raise self._wrap(operation, exc, mapping=mapping) from exc

    def _wrap(self, operation: str, exc: Exception, *, mapping: str | None = None) -> MailboardError:
        error = classify_error(exc, mapping=mapping)
        if isinstance(error, TransientSyncError):
            logger.warning(f"gmail_{operation}_failed", error=str(exc), error_kind="transient")
        elif isinstance(error, InvalidMappingError):
            logger.warning(f"gmail_{operation}_failed", error=str(exc), error_kind="invalid_mapping", mapping=mapping)
        else:
            logger.exception(f"gmail_{operation}_failed", error=str(exc))
        return error

    async def _ensure_authenticated(self) -> None:
        if self._service is None:
            raise AuthenticationError(
                "Gmail client is not authenticated. Call await GmailClient.authenticate() first."
            )

    def _build_service(self, credentials_path: Path, token_path: Path, scope: str) -> Any:
        # Imported lazily to keep import-time cost low and tests fast.
        from google.auth.transport.requests import Request
        from google.oauth2.credentials import Credentials
        from google_auth_oauthlib.flow import InstalledAppFlow
        from googleapiclient.discovery import build

        creds: Credentials | None = None
        if token_path.exists():
            creds = Credentials.from_authorized_user_file(str(token_path), scopes=[scope])

        if creds is not None and creds.expired and creds.refresh_token:
            creds.refresh(Request())

        if creds is None or not creds.valid:
            flow = InstalledAppFlow.from_client_secrets_file(str(credentials_path), scopes=[scope])
            creds = flow.run_local_server(port=0)
            token_path.parent.mkdir(parents=True, exist_ok=True)
            token_path.write_text(creds.to_json(), encoding="utf-8")

        # cache_discovery=False prevents writing discovery docs to disk.
        return build("gmail", "v1", credentials=creds, cache_discovery=False)
