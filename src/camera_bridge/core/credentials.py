"""Classification of pasted storage credentials.

Users paste either the JSON blob printed by ``rclone authorize dropbox`` (an
OAuth2 token, possibly surrounded by the tool's banner text) or a bare
long-lived access token copied from the Dropbox app console.
"""

import json
import logging
from typing import Annotated, Literal

from pydantic import BaseModel, Field

from .errors import BridgeError, ErrorKind

logger = logging.getLogger(__name__)

# Expiry value understood by the storage backend as "never / unknown"
NO_EXPIRY = "0001-01-01T00:00:00Z"
DEFAULT_TOKEN_TYPE = "bearer"
DEFAULT_LEGACY_PREFIX = "sl."


class OAuth2Token(BaseModel):
    kind: Literal["oauth2"] = "oauth2"
    access_token: str = Field(min_length=1)
    refresh_token: str | None = None
    token_type: str = DEFAULT_TOKEN_TYPE
    expiry: str = NO_EXPIRY

    @property
    def has_refresh_token(self) -> bool:
        return bool(self.refresh_token)


class LegacyToken(BaseModel):
    kind: Literal["legacy"] = "legacy"
    access_token: str = Field(min_length=1)

    @property
    def has_refresh_token(self) -> bool:
        return False

    @property
    def expiry(self) -> str:
        return NO_EXPIRY


CredentialBundle = Annotated[OAuth2Token | LegacyToken, Field(discriminator="kind")]


def _extract_structured(text: str) -> str | None:
    """Return the outermost ``{...}`` span of ``text``, if any."""
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end < start:
        return None
    return text[start : end + 1]


def _classify_structured(payload: str) -> OAuth2Token | None:
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        return None

    if not isinstance(data, dict):
        return None

    access_token = data.get("access_token")
    if not isinstance(access_token, str) or not access_token.strip():
        raise BridgeError(
            ErrorKind.MISSING_ACCESS_TOKEN,
            "Token is missing access_token. Make sure you copied the entire token.",
        )

    refresh_token = data.get("refresh_token")
    if refresh_token is not None and not isinstance(refresh_token, str):
        refresh_token = str(refresh_token)

    expiry = data.get("expiry")
    if expiry is None or expiry == "":
        expiry = NO_EXPIRY
    elif not isinstance(expiry, str):
        expiry = str(expiry)

    token_type = data.get("token_type") or DEFAULT_TOKEN_TYPE

    return OAuth2Token(
        access_token=access_token.strip(),
        refresh_token=refresh_token or None,
        token_type=str(token_type),
        expiry=expiry,
    )


def _looks_like_legacy(text: str, prefix: str) -> bool:
    if not text or any(c.isspace() for c in text):
        return False
    if not prefix:
        return True
    return text.startswith(prefix) and len(text) > len(prefix)


def classify(raw: str, legacy_prefix: str = DEFAULT_LEGACY_PREFIX) -> OAuth2Token | LegacyToken:
    """Classify pasted text into a credential bundle.

    Raises:
        BridgeError: ``MissingAccessToken`` when a JSON object parses but has no
            access token, ``InvalidFormat`` when the text is neither a token
            object nor a legacy token.
    """
    text = (raw or "").strip()

    payload = _extract_structured(text)
    if payload is not None:
        bundle = _classify_structured(payload)
        if bundle is not None:
            logger.debug(
                f"Classified OAuth2 token (refresh={'yes' if bundle.has_refresh_token else 'no'})"
            )
            return bundle

    if _looks_like_legacy(text, legacy_prefix):
        logger.debug("Classified legacy access token")
        return LegacyToken(access_token=text)

    raise BridgeError(
        ErrorKind.INVALID_FORMAT,
        "Invalid token format. Provide either an OAuth2 JSON token or a legacy token "
        f'starting with "{legacy_prefix}".',
    )
