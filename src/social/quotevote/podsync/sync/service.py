"""
Portable State Sync

Reads and writes a user's portable documents on their Pod.

- Pull fetches profile and preferences (and the activity ledger when enabled). Absent or
  unreadable documents are replaced by defaults so first-time users get a usable state.
- Push merges partial updates field-by-field onto the current remote documents as
  stored, keeping fields this service does not define, and writes them back. ``notifications`` and ``accessibility`` preferences are merged one
  level deeper so omitted flags are preserved. ``last_sync_at`` advances only when every
  requested write succeeded.
- Append adds one event to the activity ledger using conditional writes. When the
  ledger changed between read and write the append is re-read and retried.

Resource locations are stored on the connection. When absent they are derived from the
origin of the user's WebID and saved for later calls.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple, Type
from urllib.parse import urlparse

from aiohttp import hdrs

from social.quotevote.podsync.client.pod_client import JSON_ACCEPT, PodClient
from social.quotevote.podsync.errors import (
    ActivityLedgerConflict,
    ActivityLedgerDisabled,
    ConnectionNotFound,
    PodRequestError,
    PodResourceError,
    PodSyncError,
    SyncError,
    TokenDecryptionError,
)
from social.quotevote.podsync.model.connection import ConnectionStore
from social.quotevote.podsync.sync.portable import (
    ActivityEvent,
    ActivityEventInput,
    ActivityLedger,
    PortableModel,
    PortablePreferences,
    PortableProfile,
    PortableState,
    PortableStateInput,
    ResourceUris,
    default_preferences,
    default_profile,
    partial_fields,
)

logger = logging.getLogger(__name__)

PROFILE_PATH = "/public/quote-vote/profile"
PREFERENCES_PATH = "/private/quote-vote/preferences"
ACTIVITY_LEDGER_PATH = "/private/quote-vote/activity-ledger"

LEDGER_WRITE_ATTEMPTS = 3

NESTED_PREFERENCES = ("notifications", "accessibility")


def default_resource_uris(web_id: str) -> ResourceUris:
    parsed = urlparse(web_id)
    base_url = f"{parsed.scheme}://{parsed.netloc}"
    return ResourceUris(
        profile=f"{base_url}{PROFILE_PATH}",
        preferences=f"{base_url}{PREFERENCES_PATH}",
        activity_ledger=f"{base_url}{ACTIVITY_LEDGER_PATH}",
    )


def merge_profile(existing: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
    return {**existing, **update}


def merge_preferences(
    existing: Dict[str, Any], update: Dict[str, Any]
) -> Dict[str, Any]:
    merged = {**existing, **update}
    for key in NESTED_PREFERENCES:
        if key not in existing and key not in update:
            continue
        current = existing.get(key, None)
        merged[key] = {
            **(current if isinstance(current, dict) else {}),
            **(update.get(key, None) or {}),
        }
    return merged


class PortableStateSync:
    """
    Pull, push and append operations for one user.

    Args:
        client: Authenticated client for the user's Pod
        store: Connection store
        user_id: Application user
        activity_ledger_enabled: Feature flag for the activity ledger
    """

    def __init__(
        self,
        client: PodClient,
        store: ConnectionStore,
        user_id: str,
        activity_ledger_enabled: bool = False,
    ) -> None:
        self.client = client
        self.store = store
        self.user_id = user_id
        self.activity_ledger_enabled = activity_ledger_enabled

    async def resolve_resource_uris(self) -> ResourceUris:
        """
        Return the connection's resource locations, deriving and saving them if unset.

        Raises:
            ConnectionNotFound: If the user has no connection
        """
        connection = await self.store.find_connection(self.user_id)
        if connection is None:
            raise ConnectionNotFound(self.user_id)

        stored = connection.resource_uris or {}
        if stored.get("profile", None) and stored.get("preferences", None):
            return ResourceUris.model_validate(stored)

        uris = default_resource_uris(connection.web_id)
        await self.store.upsert_connection(
            self.user_id, resource_uris=uris.model_dump(by_alias=True)
        )
        logger.debug("Derived resource URIs for user %s from WebID", self.user_id)
        return uris

    async def _fetch_document(
        self, url: str, model: Type[PortableModel]
    ) -> Optional[Dict[str, Any]]:
        """Fetch and validate a document, or None when it is absent or unusable."""
        try:
            document = await self.client.get_json(url)
        except (PodResourceError, PodRequestError) as e:
            logger.debug("Using default for %s: %s", url, e)
            return None

        if not isinstance(document, dict):
            logger.info("Ignoring non-object document at %s", url)
            return None

        try:
            return model.model_validate(document).to_json()
        except ValueError:
            logger.info("Ignoring invalid document at %s", url)
            return None

    async def _fetch_existing(
        self, url: str, default: PortableModel
    ) -> Dict[str, Any]:
        """
        The remote document as stored, for merging on push.

        Fields are kept as they are, including ones this service does not define. The
        default document is used when the resource is missing or not a JSON object.
        """
        try:
            document = await self.client.get_json(url)
        except PodResourceError as e:
            logger.debug("Merging onto default for %s: %s", url, e)
            return default.to_json()

        if not isinstance(document, dict):
            logger.info("Replacing non-object document at %s", url)
            return default.to_json()
        return document

    async def pull(self) -> PortableState:
        """
        Read the portable state from the Pod.

        Raises:
            ConnectionNotFound: If the user has no connection
            SyncError: If the Pod could not be read for a reason other than missing or
                invalid documents, for example a failed token refresh
        """
        uris = await self.resolve_resource_uris()

        try:
            profile = await self._fetch_document(uris.profile, PortableProfile)
            preferences = await self._fetch_document(
                uris.preferences, PortablePreferences
            )

            activity_ledger = None
            if self.activity_ledger_enabled and uris.activity_ledger:
                activity_ledger = await self._fetch_document(
                    uris.activity_ledger, ActivityLedger
                ) or ActivityLedger().to_json()
        except TokenDecryptionError:
            raise
        except PodSyncError as e:
            raise SyncError(f"Failed to pull portable state: {e}") from e

        return PortableState(
            profile=profile or default_profile(),
            preferences=preferences or default_preferences(),
            activity_ledger=activity_ledger,
        )

    async def push(self, state_input: PortableStateInput) -> bool:
        """
        Merge partial profile and preferences updates into the Pod documents.

        Raises:
            ConnectionNotFound: If the user has no connection
            SyncError: If any requested write failed. ``last_sync_at`` is unchanged.
        """
        uris = await self.resolve_resource_uris()

        try:
            if state_input.profile is not None:
                existing_profile = await self._fetch_existing(
                    uris.profile, default_profile()
                )
                merged_profile = merge_profile(
                    existing_profile,
                    partial_fields(state_input.profile),
                )
                await self.client.put_json(uris.profile, merged_profile)

            if state_input.preferences is not None:
                existing_preferences = await self._fetch_existing(
                    uris.preferences, default_preferences()
                )
                merged_preferences = merge_preferences(
                    existing_preferences,
                    partial_fields(state_input.preferences),
                )
                await self.client.put_json(uris.preferences, merged_preferences)

            await self.store.upsert_connection(
                self.user_id, last_sync_at=datetime.now(timezone.utc)
            )
        except TokenDecryptionError:
            raise
        except PodSyncError as e:
            raise SyncError(f"Failed to push portable state: {e}") from e

        logger.info("Pushed portable state for user %s", self.user_id)
        return True

    async def _read_ledger(
        self, url: str
    ) -> Tuple[Dict[str, Any], Optional[str], bool]:
        response = await self.client.fetch(url, headers={hdrs.ACCEPT: JSON_ACCEPT})

        if response.status in (404, 410):
            return {"events": []}, None, False

        ledger = self.client.json_body(response, url)
        if not isinstance(ledger, dict) or not isinstance(
            ledger.get("events", None), list
        ):
            raise SyncError(f"Activity ledger at {url} is malformed")

        return ledger, response.etag, True

    async def append(self, event_input: ActivityEventInput) -> ActivityEvent:
        """
        Append one event to the activity ledger.

        Raises:
            ActivityLedgerDisabled: If the feature flag is off
            ActivityLedgerConflict: If concurrent writers kept changing the ledger
            SyncError: If the ledger could not be read or written
        """
        if not self.activity_ledger_enabled:
            raise ActivityLedgerDisabled()

        uris = await self.resolve_resource_uris()
        if not uris.activity_ledger:
            raise SyncError("Activity ledger URI not configured")

        event = ActivityEvent(
            type=event_input.type,
            instance_id=event_input.instance_id,
            resource_url=event_input.resource_url,
            timestamp=datetime.now(timezone.utc),
            payload=event_input.payload,
        )

        try:
            for attempt in range(1, LEDGER_WRITE_ATTEMPTS + 1):
                ledger, etag, exists = await self._read_ledger(uris.activity_ledger)
                ledger["events"].append(event.to_json())

                precondition: Dict[str, str] = {}
                if etag is not None:
                    precondition[hdrs.IF_MATCH] = etag
                elif not exists:
                    precondition[hdrs.IF_NONE_MATCH] = "*"

                try:
                    await self.client.put_json(
                        uris.activity_ledger, ledger, headers=precondition
                    )
                    return event
                except PodResourceError as e:
                    if e.status != 412:
                        raise
                    logger.warning(
                        "Activity ledger changed during append for user %s (attempt %d of %d)",
                        self.user_id,
                        attempt,
                        LEDGER_WRITE_ATTEMPTS,
                    )
        except (SyncError, TokenDecryptionError):
            raise
        except PodSyncError as e:
            raise SyncError(f"Failed to append activity event: {e}") from e

        raise ActivityLedgerConflict(
            f"Failed to append activity event: ledger kept changing after {LEDGER_WRITE_ATTEMPTS} attempts"
        )
