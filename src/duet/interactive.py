"""Terminal prompts used by the interactive approval gate."""

from __future__ import annotations

from collections.abc import Callable, Sequence

InputFn = Callable[[str], str]

_YES = {"y", "yes"}
_NO = {"n", "no"}


def ask_yes_no(prompt: str, *, default: bool = False, input_fn: InputFn = input) -> bool:
    """Ask until the answer is yes/no; an empty answer returns *default*."""
    while True:
        try:
            answer = input_fn(prompt).strip().lower()
        except EOFError:
            return default
        if not answer:
            return default
        if answer in _YES:
            return True
        if answer in _NO:
            return False


def ask_choice(
    prompt: str,
    choices: Sequence[str],
    *,
    default_index: int = 0,
    input_fn: InputFn = input,
) -> str:
    """Ask for one of *choices* by 1-based number or by name."""
    while True:
        try:
            answer = input_fn(prompt).strip()
        except EOFError:
            return choices[default_index]
        if not answer:
            return choices[default_index]
        if answer.isdigit() and 1 <= int(answer) <= len(choices):
            return choices[int(answer) - 1]
        if answer in choices:
            return answer
