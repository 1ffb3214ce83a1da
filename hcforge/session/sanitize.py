"""Terminal output sanitization.

Remote shells emit colour codes, cursor movement, window-title updates and
carriage-return redraws. The console renders plain text, so every chunk is
reduced to printable text plus newlines and tabs before it is buffered.
"""

from __future__ import annotations

import re

# OSC: ESC ] ... terminated by BEL or ESC \
_OSC = re.compile(r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)?")
# CSI: ESC [ params intermediates final
_CSI = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]")
# 8-bit CSI
_CSI_8BIT = re.compile(r"\x9b[0-?]*[ -/]*[@-~]")
# DCS / SOS / PM / APC strings
_STRING_SEQ = re.compile(r"\x1b[PX^_].*?(?:\x1b\\|\x07)", re.DOTALL)
# Charset designation and two-byte escapes
_CHARSET = re.compile(r"\x1b[()*+][0-9A-Za-z]")
_ESC_SHORT = re.compile(r"\x1b[@-Z\\-_=>78]")
# Remaining C0 controls except \t and \n, plus DEL
_CONTROL = re.compile(r"[\x00-\x08\x0b-\x1f\x7f]")
_BLANK_RUN = re.compile(r"\n{3,}")


def strip_escape_sequences(text: str) -> str:
    for pattern in (_OSC, _STRING_SEQ, _CSI, _CSI_8BIT, _CHARSET, _ESC_SHORT):
        text = pattern.sub("", text)
    return text


def normalize_newlines(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


def sanitize_output(text: str) -> str:
    """Reduce raw terminal output to plain text.

    Example:
        >>> sanitize_output("\\x1b[32mok\\x1b[0m\\r\\n\\n\\n\\ndone")
        'ok\\n\\ndone'
    """
    text = strip_escape_sequences(text)
    text = normalize_newlines(text)
    text = _CONTROL.sub("", text)
    return _BLANK_RUN.sub("\n\n", text)
