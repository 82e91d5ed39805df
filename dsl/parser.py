"""Regex-driven extraction of sounds, notes and functions from Strudel code.

The parser never fails: constructs the regexes do not recognize simply
produce empty results.
"""

from __future__ import annotations

import re

from core.models import ParsedCode

# sound("bd hh") or s('bd') or s(`bd`)
SOUND_RE = re.compile(r"\b(?:sound|s)\s*\(\s*[\"'`]([^\"'`]+)[\"'`]")

# note("c e g") or note(`c e g`)
NOTE_RE = re.compile(r"\bnote\s*\(\s*[\"'`]([^\"'`]+)[\"'`]")

# template literal followed by a method call: `c e g`.note()
BACKTICK_RE = re.compile(r"`([^`]+)`\s*\.\w+\s*\(")

# method calls: .fast(2), .lpf(400)
FUNCTION_RE = re.compile(r"\.(\w+)\s*\(")

VARIABLE_RE = re.compile(r"\b(?:let|const|var)\s+(\w+)\s*=")

SCALE_RE = re.compile(r"\b(?:scale|mode)\s*\(\s*[\"'](\w+)[\"']")

NUMERIC_RE = re.compile(r"^\d+\.?\d*$")

# characters that carry mini-notation structure rather than names
_PATTERN_SYNTAX = str.maketrans({c: " " for c in "[]<>(){}*@!/|?,"})
_RESTS = {"~", "-", ""}


def _method(name: str) -> re.Pattern[str]:
    return re.compile(rf"\.{name}\s*\(")


def _call(name: str) -> re.Pattern[str]:
    # standalone or chained: stack(...) and .stack(...)
    return re.compile(rf"(?:^|\W){name}\s*\(")


PATTERN_RES: dict[str, re.Pattern[str]] = {
    # structure / layering
    "stack": _call("stack"),
    "layer": _call("layer"),
    # time modifiers
    "slow": _method("slow"),
    "fast": _method("fast"),
    "early": _method("early"),
    "late": _method("late"),
    "euclid": _method("euclid"),
    "rev": _method("rev"),
    "iter": _method("iter"),
    "ply": _method("ply"),
    "segment": _method("segment"),
    # conditional modifiers
    "every": _method("every"),
    "sometimes": _method("sometimes"),
    "often": _method("often"),
    "rarely": _method("rarely"),
    "almostNever": _method("almostNever"),
    "almostAlways": _method("almostAlways"),
    "never": _method("never"),
    "always": _method("always"),
    # arrangement
    "arrange": _call("arrange"),
    # interactive
    "slider": re.compile(r"slider\s*\("),
    # sampler
    "chop": _method("chop"),
    "striate": _method("striate"),
    "slice": _method("slice"),
}


def unique(items: list[str]) -> list[str]:
    """Deduplicate preserving first occurrence."""
    return list(dict.fromkeys(items))


def parse_pattern_string(pattern: str) -> list[str]:
    """Extract sample names from mini-notation.

    "bd:0" -> ["bd"], "[~ sd hh]*2" -> ["sd", "hh"], "bd, hh" -> ["bd", "hh"]
    """
    names = []
    for token in pattern.translate(_PATTERN_SYNTAX).split():
        if token in _RESTS:
            continue
        name = token.split(":", 1)[0]
        if not name or name == "x" or NUMERIC_RE.match(name):
            continue
        names.append(name)
    return names


def extract_sounds(code: str) -> list[str]:
    sounds: list[str] = []
    for match in SOUND_RE.finditer(code):
        sounds.extend(parse_pattern_string(match.group(1)))
    return unique(sounds)


def extract_notes(code: str) -> list[str]:
    notes: list[str] = []
    for match in NOTE_RE.finditer(code):
        notes.extend(match.group(1).split())
    for match in BACKTICK_RE.finditer(code):
        notes.extend(match.group(1).split())
    return notes


def extract_functions(code: str) -> list[str]:
    return FUNCTION_RE.findall(code)


def extract_variables(code: str) -> list[str]:
    return VARIABLE_RE.findall(code)


def extract_scales(code: str) -> list[str]:
    return SCALE_RE.findall(code)


def count_patterns(code: str) -> dict[str, int]:
    return {name: len(regex.findall(code)) for name, regex in PATTERN_RES.items()}


def parse(code: str) -> ParsedCode:
    """Extract all recognized elements from Strudel code."""
    return ParsedCode(
        sounds=extract_sounds(code),
        notes=extract_notes(code),
        functions=extract_functions(code),
        variables=extract_variables(code),
        scales=extract_scales(code),
        patterns=count_patterns(code),
    )


def extract_keywords(editor_state: str) -> str:
    """Space-separated sounds, notes, functions and variables in the editor.

    Used as the suffix of the contextual search query. Empty editor state
    yields an empty string.
    """
    if not editor_state.strip():
        return ""

    parsed = parse(editor_state)
    keywords = unique(parsed.sounds + parsed.notes + parsed.functions + parsed.variables)
    return " ".join(keywords)
