"""On-disk storage for OAuth access tokens, keyed by shop domain.

Tokens for this platform are long-lived, so records are never expired or
refreshed here. The file is a single JSON mapping:

    {"my-store.myshopify.com": {"access_token": ..., "scope": ..., "obtained_at": ...}}
"""

import json
import logging
import os
import tempfile
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_DIR = Path.home() / ".shopify-mcp"
TOKEN_FILENAME = "tokens.json"


@dataclass(frozen=True)
class TokenRecord:
    """A persisted access credential for one shop."""

    access_token: str
    scope: str
    obtained_at: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TokenRecord":
        return cls(
            access_token=data["access_token"],
            scope=data.get("scope", ""),
            obtained_at=data.get("obtained_at", ""),
        )

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)


class TokenStore:
    """JSON file of token records with owner-only permissions."""

    def __init__(self, token_dir: Optional[Path] = None):
        """
        Initialize the store.

        Args:
            token_dir: Directory holding the token file. Defaults to ~/.shopify-mcp
        """
        self.token_dir = Path(token_dir) if token_dir else DEFAULT_TOKEN_DIR
        self.token_file = self.token_dir / TOKEN_FILENAME

    def _read_raw(self) -> Optional[Any]:
        """Return the parsed file contents, or None if missing or unparseable."""
        try:
            with open(self.token_file, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning("Could not read token file %s: %s", self.token_file, e)
            return None

    def _read_tokens(self) -> Dict[str, Dict[str, Any]]:
        """
        Read every well-formed record in the file.

        Entries that are not objects with an access_token are dropped; the rest
        of the mapping is kept.
        """
        raw = self._read_raw()
        if not isinstance(raw, dict):
            return {}

        tokens = {}
        for domain, entry in raw.items():
            if isinstance(entry, dict) and entry.get("access_token"):
                tokens[domain] = entry
            else:
                logger.warning("Ignoring malformed token entry for %s", domain)
        return tokens

    def _backup_corrupt_file(self) -> None:
        """Keep an unparseable token file aside before it is overwritten."""
        if not self.token_file.exists():
            return
        raw = self._read_raw()
        if isinstance(raw, dict):
            return
        backup = self.token_file.with_name(TOKEN_FILENAME + ".corrupt")
        try:
            os.replace(self.token_file, backup)
            logger.warning("Token file was unreadable; moved it to %s", backup)
        except OSError as e:
            logger.warning("Could not back up corrupt token file: %s", e)

    def load(self, domain: str) -> Optional[TokenRecord]:
        """
        Load the token record for a domain.

        Args:
            domain: Shop domain

        Returns:
            The record, or None if the file or the domain entry is missing or malformed.
        """
        entry = self._read_tokens().get(domain)
        if entry is None:
            return None
        return TokenRecord.from_dict(entry)

    def save(self, domain: str, record: TokenRecord) -> None:
        """
        Insert or replace the record for a domain.

        The whole file is rewritten atomically with mode 0600.

        Args:
            domain: Shop domain
            record: Token record to persist
        """
        self.token_dir.mkdir(mode=0o700, parents=True, exist_ok=True)

        self._backup_corrupt_file()
        tokens = self._read_tokens()
        tokens[domain] = record.to_dict()

        # mkstemp creates the file with mode 0600
        fd, tmp_path = tempfile.mkstemp(dir=self.token_dir, prefix=".tokens-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(tokens, f, indent=2)
            os.replace(tmp_path, self.token_file)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

        logger.info("Token saved for %s", domain)
