"""Semantic tagging and complexity scoring of Strudel code."""

from __future__ import annotations

import re

from core.models import CodeAnalysis, ParsedCode
from dsl.parser import parse, unique

# sample names by category; a name may belong to several categories
SOUND_CATEGORIES: dict[str, tuple[str, ...]] = {
    "drums": ("bd", "sd", "rim", "cp", "hh", "oh", "cr", "rd", "ht", "mt", "lt"),
    "percussion": (
        "bd", "sd", "rim", "cp", "hh", "oh", "cr", "rd", "ht", "mt", "lt",
        "sh", "cb", "tb", "perc",
    ),
    "synth": ("sine", "sawtooth", "square", "triangle"),
    "noise": ("white", "pink", "brown", "crackle"),
    "zzfx": ("z_sawtooth", "z_tan", "z_noise", "z_sine", "z_square"),
    "wavetable": ("wt_",),
    "misc": ("misc", "fx"),
    "custom": ("user",),
}

WAVETABLE_PREFIX = "wt_"

EFFECT_CATEGORIES: dict[str, tuple[str, ...]] = {
    "filter": ("lpf", "hpf", "bpf", "lpq", "hpq", "bpq", "vowel", "ftype"),
    "filter-envelope": (
        "lpattack", "lpdecay", "lpsustain", "lprelease", "lpenv",
        "lpa", "lpd", "lps", "lpr", "lpe",
        "hpattack", "hpdecay", "hpsustain", "hprelease", "hpenv",
        "bpattack", "bpdecay", "bpsustain", "bprelease", "bpenv",
    ),
    "distortion": ("coarse", "crush", "distort", "shape"),
    "dynamics": ("gain", "velocity", "compressor", "postgain", "post", "xfade"),
    "spatial": ("pan", "jux", "juxBy"),
    "delay": ("delay", "delaytime", "delayfeedback", "echo"),
    "reverb": ("room", "roomsize", "roomfade", "roomlp", "roomdim", "iresponse"),
    "modulation": (
        "phaser", "phaserdepth", "phasercenter", "phasersweep",
        "tremolo", "tremolosync", "tremolodepth", "tremoloskew",
        "tremolophase", "tremoloshape",
        "vib", "vibmod", "am",
    ),
    "envelope": ("attack", "decay", "dec", "sustain", "release", "adsr"),
    "pitch-envelope": ("pattack", "pdecay", "prelease", "penv", "pcurve", "panchor"),
    "fm-synthesis": ("fm", "fmh", "fmattack", "fmdecay", "fmsustain", "fmenv"),
    "sampler": (
        "begin", "end", "loop", "loopBegin", "loopEnd",
        "cut", "clip", "loopAt", "fit",
        "chop", "striate", "slice", "splice", "scrub", "speed",
    ),
    "routing": ("orbit", "duckorbit"),
    "sidechain": ("duck", "duckattack", "duckdepth"),
    "synthesis": ("partials", "phases", "noise"),
    "zzfx": (
        "zrand", "curve", "slide", "deltaSlide", "zmod", "zcrush",
        "zdelay", "pitchJump", "pitchJumpTime", "lfo",
    ),
}

# function name -> effect category
EFFECT_LOOKUP: dict[str, str] = {
    fn: category for category, functions in EFFECT_CATEGORIES.items() for fn in functions
}

BASS_RE = re.compile(r"bass", re.IGNORECASE)
CHORD_RE = re.compile(r"note\s*\(\s*[\"'][^\"']*,")
SEQUENCE_RE = re.compile(r"note\s*\(\s*[\"'][a-g0-9\s]+[\"']")

SIMPLE_MAX_CHARS = 200
MEDIUM_MAX_CHARS = 500
MAX_COMPLEXITY = 10


def analyze_sounds(code: str, parsed: ParsedCode) -> list[str]:
    tags: list[str] = []
    for sound in parsed.sounds:
        for category, members in SOUND_CATEGORIES.items():
            if sound in members:
                tags.append(category)
        if sound.startswith(WAVETABLE_PREFIX):
            tags.append("wavetable")

    if BASS_RE.search(code):
        tags.append("bass")

    return unique(tags)


def analyze_effects(parsed: ParsedCode) -> list[str]:
    return unique([EFFECT_LOOKUP[fn] for fn in parsed.functions if fn in EFFECT_LOOKUP])


def analyze_musical_elements(code: str, parsed: ParsedCode) -> list[str]:
    tags: list[str] = []

    if parsed.notes:
        tags += ["melody", "melodic"]

    if parsed.scales or "scale" in parsed.functions:
        tags += ["scales", "melodic"]

    if CHORD_RE.search(code):
        tags += ["chords", "harmony"]

    if "fast" in parsed.functions or "slow" in parsed.functions:
        tags.append("rhythm")

    if SEQUENCE_RE.search(code):
        tags.append("sequences")

    return unique(tags)


def analyze_complexity_tags(code: str, parsed: ParsedCode) -> list[str]:
    tags: list[str] = []
    stack_count = parsed.patterns.get("stack", 0)
    var_count = len(parsed.variables)

    if stack_count > 3:
        tags += ["complex", "layered"]
    elif stack_count > 0:
        tags.append("layered")

    if parsed.patterns.get("arrange", 0) > 0:
        tags += ["arranged", "structured"]

    if var_count > 5:
        tags.append("advanced")

    if parsed.patterns.get("slider", 0) > 0:
        tags.append("interactive")

    # blank code carries no tags at all
    if code.strip() and len(code) < SIMPLE_MAX_CHARS and stack_count == 0 and var_count == 0:
        tags += ["simple", "beginner-friendly"]

    return tags


def calculate_complexity(code: str, parsed: ParsedCode) -> int:
    """Score code on a 0-10 scale from length, layering, variables and structure."""
    if len(code) > MEDIUM_MAX_CHARS:
        score = 3
    elif len(code) > SIMPLE_MAX_CHARS:
        score = 2
    else:
        score = 1

    stack_count = parsed.patterns.get("stack", 0)
    if stack_count > 3:
        score += 3
    elif stack_count > 0:
        score += 2

    var_count = len(parsed.variables)
    if var_count > 5:
        score += 2
    elif var_count > 0:
        score += 1

    if parsed.patterns.get("arrange", 0) > 0:
        score += 2

    if parsed.patterns.get("slider", 0) > 0:
        score += 1

    return min(score, MAX_COMPLEXITY)


def analyze_code(code: str) -> CodeAnalysis:
    """Full semantic analysis of Strudel code."""
    parsed = parse(code)
    return CodeAnalysis(
        sound_tags=analyze_sounds(code, parsed),
        effect_tags=analyze_effects(parsed),
        musical_tags=analyze_musical_elements(code, parsed),
        complexity_tags=analyze_complexity_tags(code, parsed),
        complexity=calculate_complexity(code, parsed),
        line_count=code.count("\n") + 1,
        function_count=len(parsed.functions),
        variable_count=len(parsed.variables),
    )


def generate_tags(
    analysis: CodeAnalysis, category: str = "", existing_tags: list[str] | None = None
) -> list[str]:
    """Merge existing tags, the category and all analysis tags into one list."""
    tags = [t.lower() for t in existing_tags or [] if t]
    if category:
        tags.append(category.lower())
    tags += analysis.sound_tags
    tags += analysis.effect_tags
    tags += analysis.musical_tags
    tags += analysis.complexity_tags
    return unique(tags)
