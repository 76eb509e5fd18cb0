import re

from ai_prompts import contains_scaffolding

_EMBEDDED_IMAGE_RE = re.compile(r"!\[[^\]]*\]\(\s*(\S+?)\s*\)")
_LABELED_URL_RE = re.compile(r"\*\*(Avatar|Image|Logo):\*\*\s*(https?://[^\s)\]<>\"']+)", re.IGNORECASE)
_IMAGE_EXT_URL_RE = re.compile(
    r"(?<![(\[])(https?://[^\s)\]<>\"']+?\.(?:png|jpe?g|gif|webp|svg|bmp|ico)(?:\?[^\s)\]<>\"']*)?)(?=[\s)\],;!]|\.(?:\s|$)|$)",
    re.IGNORECASE,
)
_URL_RE = re.compile(r"(?<![(\[])(https?://[^\s)\]<>\"']+)")

_IMAGE_HOSTS = (
    "seadn.io",
    "ipfs.io",
    "cloudflare-ipfs.com",
    "nftstorage.link",
    "googleusercontent.com",
    "openseauserdata.com",
    "tokens.1inch.io",
    "assets.coingecko.com",
    "nft-cdn.alchemy.com",
    "arweave.net",
)

_TRAILING_PUNCT = ".,;:!?"

_RESULTS_HEADER = "tool results obtained:"
_RESULT_CHUNK_RE = re.compile(r"^\s*\[[\w-]+\]\s*$")

_META_PATTERNS = (
    re.compile(r"\*\*Tool (?:Result|Error)(?: \([^)]*\))?:\*\*\s*"),
    re.compile(r"\b(?:based on|according to|from) (?:the |my )?(?:tool|function) (?:results?|outputs?|calls?),?\s*", re.IGNORECASE),
    re.compile(r"\bI(?: will|'ll| am going to) (?:now )?(?:call|use|invoke) the [\w-]+ tool\b[^.\n]*\.\s*", re.IGNORECASE),
)


def _clean_url(url: str) -> str:
    return url.rstrip(_TRAILING_PUNCT)


def _on_image_host(url: str) -> bool:
    host = url.split("://", 1)[-1].split("/", 1)[0].lower()
    return any(host == h or host.endswith("." + h) for h in _IMAGE_HOSTS)


def promote_image_urls(text: str) -> str:
    """Append a markdown image below every line that mentions an image URL.

    Passes run in order: ``**Avatar|Image|Logo:** <url>``, bare URLs with an
    image extension, then URLs on known image hosts. Each URL is embedded at
    most once, and URLs that already appear inside ``![..](..)`` are skipped,
    so the function is idempotent.
    """
    if not text:
        return text

    processed = set(_EMBEDDED_IMAGE_RE.findall(text))
    out: list[str] = []
    for line in text.split("\n"):
        out.append(line)
        embeds: list[str] = []

        for m in _LABELED_URL_RE.finditer(line):
            url = _clean_url(m.group(2))
            if url in processed:
                continue
            processed.add(url)
            embeds.append(f"![{m.group(1).capitalize()}]({url})")

        for m in _IMAGE_EXT_URL_RE.finditer(line):
            url = _clean_url(m.group(1))
            if url in processed:
                continue
            processed.add(url)
            embeds.append(f"![Image]({url})")

        for m in _URL_RE.finditer(line):
            url = _clean_url(m.group(1))
            if url in processed or not _on_image_host(url):
                continue
            processed.add(url)
            embeds.append(f"![Image]({url})")

        out.extend(embeds)
    return "\n".join(out)


def _results_block_end(lines: list[str], start: int) -> int:
    """Index just past an echoed results block whose first line is ``start``.

    The block is the ``[tool_name]`` chunks after the header. It ends at the first blank
    line not followed by another chunk, or at the next directive line.
    """
    j = start
    while j < len(lines):
        if contains_scaffolding(lines[j]):
            return j
        if not lines[j].strip():
            k = j
            while k < len(lines) and not lines[k].strip():
                k += 1
            if k < len(lines) and _RESULT_CHUNK_RE.match(lines[k]):
                j = k
                continue
            return j
        j += 1
    return len(lines)


def scrub_scaffolding(text: str) -> str:
    """Remove echoed directive text and tool meta-commentary, then trim."""
    if not text:
        return ""

    lines = text.split("\n")
    kept: list[str] = []
    i = 0
    while i < len(lines):
        line = lines[i]
        if _RESULTS_HEADER in line.lower():
            i = _results_block_end(lines, i + 1)
            continue
        if contains_scaffolding(line):
            i += 1
            continue
        kept.append(line)
        i += 1

    cleaned = "\n".join(kept)
    for pattern in _META_PATTERNS:
        cleaned = pattern.sub("", cleaned)
    cleaned = re.sub(r"[ \t]+\n", "\n", cleaned)
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    return cleaned.strip()


def clean_response(text: str) -> str:
    return promote_image_urls(scrub_scaffolding(text)).strip()
