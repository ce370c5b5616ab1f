import logging

from utils.reference_codec import encode, build_proxy_link, is_segment_url

logger = logging.getLogger(__name__)

ABSOLUTE_PREFIXES = ('http://', 'https://')


class ManifestRewriter:
    """Rewrites segment references in line-oriented playlists (HLS m3u8)"""

    @staticmethod
    def base_path(base_url: str) -> str:
        """Prefix of ``base_url`` up to and including the final '/'."""
        return base_url[:base_url.rfind('/') + 1]

    @staticmethod
    def resolve(reference: str, base_url: str) -> str:
        if reference.lower().startswith(ABSOLUTE_PREFIXES):
            return reference
        return ManifestRewriter.base_path(base_url) + reference

    @staticmethod
    def rewrite(manifest_content: str, base_url: str, direct: bool = False, referer: str = None, proxy_path: str = '/pp') -> str:
        """Replaces every segment line with a direct URL or a proxy link.

        Tags and any line that does not end in a segment suffix pass through
        unchanged. Indentation, trailing whitespace and line endings are kept.
        """
        rewritten_lines = []
        rewritten = 0

        for line in manifest_content.splitlines(keepends=True):
            body = line.rstrip()
            value = body.strip()

            if not value or value.startswith('#') or not is_segment_url(value):
                rewritten_lines.append(line)
                continue

            segment_url = ManifestRewriter.resolve(value, base_url)
            if direct:
                new_value = segment_url
            else:
                new_value = build_proxy_link(encode(segment_url), referer=referer, proxy_path=proxy_path)

            indent = body[:len(body) - len(value)]
            rewritten_lines.append(indent + new_value + line[len(body):])
            rewritten += 1

        logger.debug(f"📝 Rewrote {rewritten} segment reference(s) ({'direct' if direct else 'proxied'})")
        return ''.join(rewritten_lines)
