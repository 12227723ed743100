"""Helpers for rendering the relay status page."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from decimal import Context, Decimal, ROUND_HALF_EVEN
from typing import Any

import jinja2

_WEI_PER_ETH = Decimal(10) ** 18
_SIGNIFICANT_DIGITS = 10
_INTEGER_RE = re.compile(r"[+-]?\d+")
_WORD_RE = re.compile(r"\w+(?:['’]\w+)*")
_PRESERVED_BLOCK_RE = re.compile(
    r"<(pre|textarea|script|style)\b.*?</\1\s*>", re.IGNORECASE | re.DOTALL
)
_COMMENT_RE = re.compile(r"<!--.*?-->", re.DOTALL)
_NEWLINE_BETWEEN_TAGS_RE = re.compile(r">\s*\n\s*<")
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass
class StatusHTMLData:
    """Values shown on the status page."""

    network: str = ""
    relay_pubkey: str = ""
    validators_total: int = 0
    validators_registered: int = 0
    bellatrix_fork_version: str = ""
    capella_fork_version: str = ""
    genesis_fork_version: str = ""
    genesis_validators_root: str = ""
    builder_signing_domain: str = ""
    beacon_proposer_signing_domain: str = ""
    head_slot: int = 0
    num_payloads_delivered: int = 0
    payloads: list[Any] = field(default_factory=list)

    value_link: str = ""
    value_order_icon: str = ""

    show_config_details: bool = False
    link_beaconchain: str = ""
    link_etherscan: str = ""
    link_data_api: str = ""
    relay_url: str = ""


def _format_general(value: Decimal) -> str:
    """Format like a %g conversion with trailing zeros removed."""
    if value.is_zero():
        return "0"
    sign, digits, _ = value.as_tuple()
    prefix = "-" if sign else ""
    exponent = value.adjusted()
    if exponent < -4 or exponent >= _SIGNIFICANT_DIGITS:
        head, tail = str(digits[0]), "".join(str(d) for d in digits[1:])
        mantissa = f"{head}.{tail}" if tail else head
        exp_sign = "-" if exponent < 0 else "+"
        return f"{prefix}{mantissa}e{exp_sign}{abs(exponent):02d}"
    return format(value, "f")


def wei_to_eth(wei: str) -> str:
    """Convert a decimal wei amount into an ether amount with 10 significant digits.

    Text that is not a base-10 integer counts as zero.
    """
    text = str(wei).strip()
    if not _INTEGER_RE.fullmatch(text):
        return "0"
    context = Context(prec=_SIGNIFICANT_DIGITS, rounding=ROUND_HALF_EVEN)
    value = context.divide(Decimal(text), _WEI_PER_ETH)
    return _format_general(value.normalize(context))


def pretty_int(i: int) -> str:
    """Format an integer with English thousands separators."""
    return f"{int(i):,}"


def case_it(s: str) -> str:
    """Title-case every word of a string."""
    return _WORD_RE.sub(lambda m: m[0][:1].upper() + m[0][1:].lower(), s)


def parse_index_template(content: str) -> jinja2.Template:
    """Compile the index page template with the page helpers available.

    The helpers are usable both as filters and as global functions, under
    their Python names and under camel-case names.
    """
    env = jinja2.Environment(
        autoescape=False,
        undefined=jinja2.StrictUndefined,
        keep_trailing_newline=True,
    )
    helpers = {
        "wei_to_eth": wei_to_eth,
        "weiToEth": wei_to_eth,
        "pretty_int": pretty_int,
        "prettyInt": pretty_int,
        "case_it": case_it,
        "caseIt": case_it,
    }
    env.filters.update(helpers)
    env.globals.update(helpers)
    return env.from_string(content)


def _collapse(segment: str) -> str:
    segment = _COMMENT_RE.sub("", segment)
    segment = _NEWLINE_BETWEEN_TAGS_RE.sub("><", segment)
    return _WHITESPACE_RE.sub(" ", segment)


def minify_html(text: str) -> str:
    """Shrink HTML by dropping comments and collapsing whitespace.

    The contents of pre, textarea, script and style elements are kept as-is.
    """
    parts: list[str] = []
    position = 0
    for match in _PRESERVED_BLOCK_RE.finditer(text):
        parts.append(_collapse(text[position:match.start()]))
        parts.append(match.group(0))
        position = match.end()
    parts.append(_collapse(text[position:]))
    return "".join(parts).strip()