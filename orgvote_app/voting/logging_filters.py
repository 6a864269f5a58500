import logging
import re

_CODE_RE = re.compile(r"(?P<key>\b(?:member_code|voter_code|code)\s*[=:]\s*)(?P<value>['\"]?[^\s,;'\"]+['\"]?)", re.IGNORECASE)


class RedactVoterCodesFilter(logging.Filter):
    """Mask voter/member codes that appear in log messages.

    Codes are login credentials, so `code=ABC123` is rewritten to
    `code=***` before the record reaches a handler. Records are never dropped.
    """

    def __init__(self, mask: str = "***") -> None:
        super().__init__()
        self.mask = mask

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = _CODE_RE.sub(lambda m: f"{m.group('key')}{self.mask}", message)
        if redacted != message:
            record.msg = redacted
            record.args = ()
        return True
