#!/usr/bin/env python3
"""
Gmail API Client Module

Fetches message and thread resources from the Gmail REST API with an access token
supplied by the caller. Token acquisition and refresh are handled elsewhere.
"""

from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from typing import Dict, Iterable, List, Optional

import requests


class GmailApiError(Exception):
    """Raised when the Gmail API returns an error or an unusable response"""


def listing_ids(entries: List[Dict], collection: str) -> List[str]:
    """
    Return the ids of a list response's entries.

    Raises:
        GmailApiError: If an entry is not an object with a non-empty id
    """
    ids = []
    for entry in entries:
        entry_id = entry.get("id") if isinstance(entry, dict) else None
        if not entry_id or not isinstance(entry_id, str):
            raise GmailApiError(f'Invalid Gmail API response: malformed entry in "{collection}"')
        ids.append(entry_id)
    return ids


class GmailApiClient:
    """Handles authenticated requests against the Gmail API"""

    GMAIL_ENDPOINT = "https://www.googleapis.com/gmail/v1/users/me"

    def __init__(
        self,
        access_token: str,
        base_url: str = GMAIL_ENDPOINT,
        timeout: float = 30,
        fetch_workers: int = 10,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize the Gmail API client

        Args:
            access_token: OAuth2 bearer token for the mailbox
            base_url: API root for the authenticated user
            timeout: Per-request timeout in seconds
            fetch_workers: Number of concurrent detail requests
            session: Optional requests session to reuse connections
        """
        self.access_token = access_token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.fetch_workers = max(1, fetch_workers)
        self.session = session or requests.Session()

    def _make_api_request(self, endpoint: str, params=None) -> Dict:
        """Make an authenticated GET request and return the decoded JSON body"""
        if not self.access_token:
            raise GmailApiError("No access token available")

        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/json",
        }
        url = f"{self.base_url}{endpoint}"

        try:
            response = self.session.get(url, headers=headers, params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise GmailApiError(f"Gmail API request error: {e}") from e

        if response.status_code != 200:
            raise GmailApiError(f"Gmail API error: {response.status_code} {response.reason}")

        try:
            result = response.json()
        except ValueError as e:
            raise GmailApiError(f"Gmail API returned invalid JSON for {endpoint}") from e

        if not isinstance(result, dict):
            raise GmailApiError(f"Gmail API returned an unexpected response for {endpoint}")
        return result

    def _list(self, collection: str, max_results: int, label_ids: Iterable[str]) -> List[Dict]:
        params = [("maxResults", max_results)]
        params.extend(("labelIds", label) for label in label_ids)

        result = self._make_api_request(f"/{collection}", params=params)
        entries = result.get(collection, [])
        if not isinstance(entries, list):
            raise GmailApiError(f'Invalid Gmail API response: malformed "{collection}" field')
        listing_ids(entries, collection)
        return entries

    def list_messages(self, max_results: int = 50, label_ids: Iterable[str] = ("SENT",)) -> List[Dict]:
        """
        List message references for the given labels

        Returns:
            List[Dict]: Entries with "id" and "threadId"; empty when the mailbox has none
        """
        return self._list("messages", max_results, label_ids)

    def list_threads(self, max_results: int = 50, label_ids: Iterable[str] = ("SENT",)) -> List[Dict]:
        """List thread references for the given labels"""
        return self._list("threads", max_results, label_ids)

    def get_message(self, message_id: str) -> Dict:
        return self._make_api_request(f"/messages/{message_id}", params={"format": "full"})

    def get_thread(self, thread_id: str) -> Dict:
        return self._make_api_request(f"/threads/{thread_id}", params={"format": "full"})

    def get_messages(self, message_ids: List[str]) -> List[Dict]:
        """
        Fetch full message resources concurrently.

        Args:
            message_ids: Message identifiers to fetch

        Returns:
            List[Dict]: Message resources in the same order as message_ids

        Raises:
            GmailApiError: If any single fetch fails; no partial result is returned
        """
        return self._fetch_all(self.get_message, message_ids)

    def get_threads(self, thread_ids: List[str]) -> List[Dict]:
        """Fetch full thread resources concurrently; all succeed or the batch fails"""
        return self._fetch_all(self.get_thread, thread_ids)

    def _fetch_all(self, fetch, ids: List[str]) -> List[Dict]:
        if not ids:
            return []

        with ThreadPoolExecutor(max_workers=min(self.fetch_workers, len(ids))) as executor:
            futures = [executor.submit(fetch, item_id) for item_id in ids]
            done, pending = wait(futures, return_when=FIRST_EXCEPTION)

            for future in done:
                error = future.exception()
                if error is not None:
                    for pending_future in pending:
                        pending_future.cancel()
                    if isinstance(error, GmailApiError):
                        raise error
                    raise GmailApiError(f"Gmail API fetch failed: {error}") from error

            return [future.result() for future in futures]
