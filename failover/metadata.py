"""Instance identity resolution through the EC2 metadata service (IMDSv2)."""

from __future__ import annotations

import logging

import httpx

from failover.config import settings
from failover.exceptions import MetadataUnavailableError
from failover.schemas import NodeIdentity

logger = logging.getLogger(__name__)

TOKEN_PATH = "/latest/api/token"
META_PREFIX = "/latest/meta-data/"
TOKEN_TTL_HEADER = "X-aws-ec2-metadata-token-ttl-seconds"
TOKEN_HEADER = "X-aws-ec2-metadata-token"


class MetadataClient:
    """Token-based metadata lookups.

    A session token is fetched lazily on first use and attached to every
    attribute request. Any transport error or non-2xx reply is fatal: it
    means we are not on the host we expect to be on.
    """

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        token_ttl: int | None = None,
        transport: httpx.BaseTransport | None = None,
    ):
        self._base_url = (base_url or settings.metadata_url).rstrip("/")
        self._timeout = timeout if timeout is not None else settings.metadata_timeout
        self._token_ttl = token_ttl or settings.metadata_token_ttl
        self._transport = transport
        self._token: str | None = None

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self._base_url,
            timeout=httpx.Timeout(self._timeout),
            transport=self._transport,
            trust_env=False,  # never route link-local traffic via a proxy
        )

    def _fetch_token(self, client: httpx.Client) -> str:
        try:
            response = client.put(TOKEN_PATH, headers={TOKEN_TTL_HEADER: str(self._token_ttl)})
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise MetadataUnavailableError(f"Metadata token request failed: {e}") from e
        token = response.text.strip()
        if not token:
            raise MetadataUnavailableError("Metadata service returned an empty token")
        return token

    def get(self, attribute: str, required: bool = True) -> str | None:
        """Fetch a single metadata attribute (e.g. ``instance-id``).

        Returns None for a missing optional attribute (HTTP 404).
        """
        with self._client() as client:
            if self._token is None:
                self._token = self._fetch_token(client)
            try:
                response = client.get(META_PREFIX + attribute, headers={TOKEN_HEADER: self._token})
            except httpx.HTTPError as e:
                raise MetadataUnavailableError(f"Metadata lookup of {attribute} failed: {e}") from e

        if response.status_code == 404 and not required:
            return None
        if response.status_code != 200:
            raise MetadataUnavailableError(
                f"Metadata lookup of {attribute} returned HTTP {response.status_code}"
            )
        value = response.text.strip()
        if not value:
            if required:
                raise MetadataUnavailableError(f"Metadata attribute {attribute} is empty")
            return None
        return value

    def iam_role(self) -> str | None:
        """Name of the IAM role attached to this instance, if any."""
        listing = self.get("iam/security-credentials/", required=False)
        if not listing:
            return None
        return listing.splitlines()[0].strip() or None


class IdentityResolver:
    """Resolves the invoking node's :class:`NodeIdentity`."""

    def __init__(self, client: MetadataClient | None = None):
        self._client = client or MetadataClient()

    def resolve(self) -> NodeIdentity:
        instance_id = self._client.get("instance-id")
        local_ip = self._client.get("local-ipv4")
        region = self._client.get("placement/region", required=False)
        identity = NodeIdentity(instance_id=instance_id, local_primary_ip=local_ip, region=region)
        logger.debug(f"Resolved identity {identity.instance_id} ({identity.local_primary_ip}, {region})")
        return identity
