"""
Macro spacing transforms between the SillyTavern and Voxta ecosystems.

SillyTavern-style cards write macros tight (``{{char}}``) while Voxta writes
them with inner spacing (``{{ char }}``). Exporting to Voxta rewrites every
macro into the spaced form and importing from Voxta keeps it. Consumers that
need to compare macro text across the two should run both sides through
``normalize_macro_spacing`` first.
"""

import re
from typing import Any, Callable, Dict, Optional


_MACRO = re.compile(r'\{\{\s*([^{}]*?)\s*\}\}')


class MacroProcessor:
    """
    Rewrites macro delimiters in card text.

    - spaced=True:  {{char}} -> {{ char }}  (Voxta)
    - spaced=False: {{ char }} -> {{char}}  (SillyTavern / CCv2 / CCv3)
    """

    def __init__(self, spaced: bool):
        self.spaced = spaced

    def process(self, text: Optional[str]) -> str:
        if not text:
            return ""
        if self.spaced:
            return _MACRO.sub(lambda m: f"{{{{ {m.group(1)} }}}}" if m.group(1) else "{{}}", text)
        return _MACRO.sub(lambda m: f"{{{{{m.group(1)}}}}}", text)


def standard_to_voxta(text: str) -> str:
    return MacroProcessor(spaced=True).process(text)


def voxta_to_standard(text: str) -> str:
    return MacroProcessor(spaced=False).process(text)


def normalize_macro_spacing(text: Optional[str]) -> str:
    """Canonical tight form, for comparing text that went through Voxta."""
    return voxta_to_standard(text or "")


def convert_card_macros(data: Dict[str, Any], converter: Callable[[str], str]) -> Dict[str, Any]:
    """
    Apply a macro converter to every string in a card dict, recursively.

    Dict keys are left alone; only values are rewritten.
    """
    def _convert(value: Any) -> Any:
        if isinstance(value, str):
            return converter(value)
        if isinstance(value, list):
            return [_convert(item) for item in value]
        if isinstance(value, dict):
            return {k: _convert(v) for k, v in value.items()}
        return value

    return {key: _convert(value) for key, value in data.items()}
