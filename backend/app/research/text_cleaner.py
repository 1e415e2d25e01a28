"""
Text cleanup for paper abstracts.

arXiv-style abstracts arrive full of LaTeX. The UI renders plain text, so
math delimiters are stripped and the common commands are mapped to Unicode.
"""

import re

_SYMBOLS = {
    "leq": "≤",
    "geq": "≥",
    "neq": "≠",
    "approx": "≈",
    "times": "×",
    "div": "÷",
    "pm": "±",
    "infty": "∞",
    "alpha": "α",
    "beta": "β",
    "gamma": "γ",
    "delta": "δ",
    "epsilon": "ε",
    "theta": "θ",
    "lambda": "λ",
    "mu": "μ",
    "sigma": "σ",
    "pi": "π",
    "lfloor": "⌊",
    "rfloor": "⌋",
    "lceil": "⌈",
    "rceil": "⌉",
}

_DISPLAY_MATH = re.compile(r"\$\$([^$]+)\$\$")
_INLINE_MATH = re.compile(r"\$([^$]+)\$")
# Longest names first so \lambda is not eaten by a shorter prefix
_SYMBOL_COMMAND = re.compile(
    r"\\(" + "|".join(sorted(_SYMBOLS, key=len, reverse=True)) + r")(?![a-zA-Z])"
)
_FRACTION = re.compile(r"\\frac\{([^}]+)\}\{([^}]+)\}")
_TEXT_COMMAND = re.compile(r"\\text\{([^}]+)\}")
_EMPHASIS = re.compile(r"\{\\em\s+([^}]+)\}")
# \textbf{x}, \emph{x}, \mathrm{x}: keep the argument
_ARG_COMMAND = re.compile(r"\\[a-zA-Z]+\{([^}]*)\}")
_GROUPING = re.compile(r"\{([^}]+)\}")
_BARE_COMMAND = re.compile(r"\\([a-zA-Z]+)")
_WHITESPACE = re.compile(r"\s+")


def clean_latex(text: str | None) -> str:
    if not text:
        return ""

    cleaned = _DISPLAY_MATH.sub(r"\1", text)
    cleaned = _INLINE_MATH.sub(r"\1", cleaned)
    cleaned = _SYMBOL_COMMAND.sub(lambda m: _SYMBOLS[m.group(1)], cleaned)
    cleaned = _FRACTION.sub(r"(\1/\2)", cleaned)
    cleaned = _TEXT_COMMAND.sub(r"\1", cleaned)
    cleaned = _EMPHASIS.sub(r"\1", cleaned)
    cleaned = _ARG_COMMAND.sub(r"\1", cleaned)
    cleaned = _GROUPING.sub(r"\1", cleaned)
    cleaned = _BARE_COMMAND.sub(r"\1", cleaned)
    return _WHITESPACE.sub(" ", cleaned).strip()


def clean_abstract(abstract: str | None) -> str:
    """Abstract as shown in the paper table."""
    return clean_latex(abstract)


def count_words(text: str | None) -> int:
    if not text:
        return 0
    return len(text.split())
