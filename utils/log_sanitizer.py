"""Log sanitizer - keeps client contact details and credentials out of log files.

Reminder logs name the destination of every send, so addresses are masked
rather than dropped: enough survives to correlate with the mail provider's
own logs.
"""

import re
from typing import Union

# (pattern, replacement) pairs applied to exception text from SMTP and PostgREST
CREDENTIAL_PATTERNS = [
    # SMTP_PASS / service key echoed back in key=value form
    (r'(password|passwd|secret|token|api_key|apikey)["\s:=]+[^\s,}"\']{6,}', r'\1=[REDACTED]'),
    # Authorization headers (Supabase service key travels as a bearer token)
    (r'(Bearer|Basic)\s+[A-Za-z0-9\-_\.]+', r'\1 [REDACTED]'),
    # Bare JWTs
    (r'eyJ[A-Za-z0-9\-_]+\.eyJ[A-Za-z0-9\-_]+\.[A-Za-z0-9\-_]+', '[JWT_TOKEN]'),
]

_CREDENTIALS = [(re.compile(p, re.IGNORECASE), r) for p, r in CREDENTIAL_PATTERNS]
_EMAIL_RE = re.compile(r'\b([A-Za-z0-9._%+-])[A-Za-z0-9._%+-]*@([A-Za-z0-9.-]+\.[A-Za-z]{2,})\b')


def mask_destination(address: str) -> str:
    """Mask every email address in ``address`` down to first character and domain.

    >>> mask_destination("jane.doe@example.com")
    'j***@example.com'
    """
    if not address:
        return "<none>"
    return _EMAIL_RE.sub(r'\1***@\2', address)


def sanitize_log(text: str) -> str:
    """Redact credentials and mask addresses in free text."""
    if not text:
        return text
    for pattern, replacement in _CREDENTIALS:
        text = pattern.sub(replacement, text)
    return mask_destination(text)


def sanitize_for_log(value: Union[str, bytes, None], max_length: int = 200) -> str:
    """``sanitize_log`` for arbitrary values, cut to ``max_length`` characters.

    SMTP replies arrive as bytes and can quote the whole rejected message,
    hence the cap.
    """
    if value is None:
        return "<None>"
    text = value.decode('utf-8', errors='replace') if isinstance(value, bytes) else str(value)
    clean = sanitize_log(text)
    if len(clean) <= max_length:
        return clean
    return f"{clean[:max_length]}... [{len(text)} chars total]"
