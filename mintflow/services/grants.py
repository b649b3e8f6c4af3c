import structlog

from mintflow.models import Public, Whitelist

logger = structlog.get_logger(__name__)


def subject_key(address: str, content_id: str | None = None) -> str:
    """``"0xabc..."`` for AI access, ``"<content_id>:0xabc..."`` for one piece of content."""
    return f"{content_id}:{address.lower()}" if content_id else address.lower()


def normalize_subject(key: str) -> str:
    # content ids are case sensitive, addresses are not
    content_id, sep, address = key.rpartition(":")
    return f"{content_id}{sep}{address.lower()}"


class LedgerGrantSource:
    """Authoritative grant answers read from the ledger.

    * address subjects: ``checkAIAccess(address)``
    * content subjects: the token owner, anyone for public content, and the
      whitelist for private content
    """

    def __init__(self, ledger, tokens) -> None:
        self._ledger = ledger
        self._tokens = tokens

    async def has_access(self, key: str) -> bool:
        content_id, sep, address = normalize_subject(key).rpartition(":")
        if not sep:
            return await self._ledger.has_access(address)

        token = await self._tokens.find_by_content(content_id)
        if token is None:
            logger.info("grant_no_token", content_id=content_id)
            return False
        if token.owner == address:
            return True
        if isinstance(token.visibility, Public):
            return True
        if isinstance(token.visibility, Whitelist):
            return address in {m.lower() for m in token.visibility.members}
        raise TypeError(f"unknown visibility: {token.visibility!r}")
