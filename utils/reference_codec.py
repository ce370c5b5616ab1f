import argparse
import base64
import binascii
import enum
import re
import urllib.parse
from urllib.parse import urlparse

from config import XOR_KEY

# Kind prefixes for tokens minted by this service. '.' is outside both
# base64 alphabets, so a prefixed token can never be mistaken for a legacy one.
SEGMENT_PREFIX = "s."
MANIFEST_PREFIX = "m."

SEGMENT_EXTENSIONS = ('ts', 'm4s', 'aac', 'mp4', 'm4a', 'm4v')

# Suffix of a binary segment reference, optionally followed by a query string
SEGMENT_SUFFIX_RE = re.compile(r'\.(?:%s)(?:\?[^\s]*)?$' % '|'.join(SEGMENT_EXTENSIONS), re.IGNORECASE)


class DecodeError(Exception):
    """Raised when a reference token cannot be turned back into a URL"""
    pass


class TokenKind(enum.Enum):
    SEGMENT = "segment"
    MANIFEST = "manifest"


def is_segment_url(value: str) -> bool:
    return bool(SEGMENT_SUFFIX_RE.search(value))


def _b64decode(payload: str) -> str:
    # Unescaped '+' arrives as a space after query decoding
    payload = payload.replace(' ', '+').strip('\r\n\t').replace('-', '+').replace('_', '/')
    payload += '=' * (-len(payload) % 4)
    try:
        raw = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecodeError(f"Invalid base64 payload: {e}")
    try:
        return raw.decode('utf-8')
    except UnicodeDecodeError as e:
        raise DecodeError(f"Payload is not UTF-8: {e}")


def _b64encode(text: str) -> str:
    return base64.b64encode(text.encode('utf-8')).decode('ascii')


def xor_cipher(text: str, key: int = XOR_KEY) -> str:
    """Single-byte substitution applied per character; its own inverse."""
    return ''.join(chr(ord(c) ^ key) for c in text)


def classify(token: str) -> TokenKind:
    """Tells segment tokens from manifest tokens.

    Prefixed tokens carry their kind explicitly. Legacy tokens are sniffed:
    the outer base64 layer is decoded and checked for a segment suffix.
    Anything that fails to decode is treated as a manifest token and left
    for :func:`decode` to reject.
    """
    if token.startswith(SEGMENT_PREFIX):
        return TokenKind.SEGMENT
    if token.startswith(MANIFEST_PREFIX):
        return TokenKind.MANIFEST
    try:
        decoded = _b64decode(token)
    except DecodeError:
        return TokenKind.MANIFEST
    return TokenKind.SEGMENT if is_segment_url(decoded) else TokenKind.MANIFEST


def _validate_url(url: str) -> str:
    parsed = urlparse(url)
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        raise DecodeError("Decoded value is not an absolute http(s) URL")
    return url


def decode(token: str) -> str:
    """Resolves a reference token to its upstream URL or raises DecodeError."""
    if not token:
        raise DecodeError("Empty token")

    kind = classify(token)
    if token.startswith((SEGMENT_PREFIX, MANIFEST_PREFIX)):
        payload = token[len(SEGMENT_PREFIX):]
    else:
        payload = token

    if kind is TokenKind.SEGMENT:
        return _validate_url(_b64decode(payload))

    # Manifest tokens may carry an extra percent-encoding layer from the transport
    return _validate_url(xor_cipher(_b64decode(urllib.parse.unquote(payload))))


def encode(url: str) -> str:
    """Builds a segment token for ``url``."""
    return SEGMENT_PREFIX + _b64encode(url)


def encode_manifest(url: str) -> str:
    """Builds a manifest token for ``url`` (XOR layer under the base64)."""
    return MANIFEST_PREFIX + _b64encode(xor_cipher(url))


def build_proxy_link(token: str, direct: bool = False, referer: str = None, proxy_path: str = '/pp') -> str:
    link = f"{proxy_path}?jj={urllib.parse.quote(token, safe='')}"
    if direct:
        link += "&dd=1"
    if referer:
        link += f"&ref={urllib.parse.quote(referer, safe='')}"
    return link


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Mint a /pp reference token for an upstream URL")
    parser.add_argument("url")
    parser.add_argument("--segment", action="store_true", help="encode as a segment token")
    parser.add_argument("--direct", action="store_true", help="add dd=1 to the generated link")
    parser.add_argument("--referer", help="Referer override to embed in the link")
    args = parser.parse_args()

    token = encode(args.url) if args.segment else encode_manifest(args.url)
    print(token)
    print(build_proxy_link(token, direct=args.direct, referer=args.referer))
