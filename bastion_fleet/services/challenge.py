"""Keyboard-interactive challenge answering.

The bastion may ask arbitrary questions during keyboard-interactive auth. Each
question is matched against a table of ``marker -> answer`` rules; the first
rule whose marker appears in the prompt text supplies the response.
"""

from __future__ import annotations

from typing import Callable, Optional, Sequence

from bastion_fleet.services.totp import totp_code
from bastion_fleet.utils.logging import get_logger

log = get_logger(__name__)

AnswerFn = Callable[[], str]


class ChallengeResponder:
    """Table-driven answers for keyboard-interactive prompts."""

    def __init__(
        self,
        secret: Optional[str] = None,
        *,
        mfa_marker: str = "OTP Code",
        time_bias: int = 3,
    ) -> None:
        self._rules: list[tuple[str, AnswerFn]] = []
        if secret:
            self.add_rule(mfa_marker, lambda: totp_code(secret, time_bias))

    def add_rule(self, marker: str, answer: AnswerFn) -> None:
        self._rules.append((marker, answer))

    def respond(self, prompt_text: str) -> Optional[str]:
        """Answer for one prompt, or ``None`` if no rule recognises it."""
        for marker, answer in self._rules:
            if marker in prompt_text:
                return answer()
        log.warning("auth.unknown_challenge", prompt=prompt_text)
        return None

    def handler(
        self,
        title: str,
        instructions: str,
        prompt_list: Sequence[tuple[str, bool]],
    ) -> list[str]:
        """paramiko ``auth_interactive`` callback.

        Unrecognised prompts get no response at all.
        """
        responses: list[str] = []
        for text, _echo in prompt_list:
            answer = self.respond(text)
            if answer is not None:
                responses.append(answer)
        return responses
