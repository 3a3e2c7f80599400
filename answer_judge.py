"""Answer Judge: decides whether a child's free-text answer is correct.

Builds an age-tuned prompt for Gemini, calls it through the resilience layer
and parses the JSON verdict. Any failure surfaces as ExternalDependencyError
so the caller writes nothing.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Mapping

from ai_resilience import DEFAULT_TIMEOUT_SECONDS, resilient_llm_call
from errors import ExternalDependencyError

logger = logging.getLogger(__name__)

JUDGE_SYSTEM_PROMPT = """You are a friendly learning buddy checking a child's answer to an exercise.

Decide whether the answer is CORRECT using these rules:
1. For math: accept equivalent forms (1/8 = 0.125 = "one eighth")
2. For text: accept minor typos and different capitalization
3. For numbers: accept with or without units if the meaning is clear
4. Be reasonably flexible: recognize understanding, do not penalize formatting

Respond ONLY with JSON:
{"isCorrect": true or false, "confidence": 0.0 to 1.0, "feedback": "your message to the child"}"""


@dataclass(frozen=True)
class JudgeVerdict:
    is_correct: bool
    feedback: str
    confidence: float = 1.0


def _feedback_guidelines(attempt_number: int, expected_answer: str, age_band: str) -> str:
    young = age_band == "YOUNG"
    audience = "YOUNG children (4-7)" if young else "OLDER children (8-12)"
    if young:
        correct = '- Use excited, celebratory language: "Yay! You did it!", "Amazing job!"'
    else:
        correct = '- Use encouraging, warm language: "Excellent work!", "That\'s exactly right!"'
    if attempt_number >= 3:
        incorrect = (
            f'- This is their last attempt, so be gentle: "That\'s okay! '
            f'The answer is {expected_answer}." plus a brief explanation'
        )
    elif young:
        incorrect = '- Be very gentle: "Hmm, not quite! Let\'s try again!"'
    else:
        incorrect = '- Be supportive: "Not quite, but good thinking! Try again."'
    return (
        f"FEEDBACK GUIDELINES for {audience}:\n\n"
        f"If CORRECT:\n{correct}\n- Keep it brief (1-2 sentences)\n\n"
        f"If INCORRECT:\n{incorrect}\n- Never reveal the answer before the last attempt"
    )


def build_judge_prompt(exercise: Mapping[str, Any], submitted_answer: str,
                       attempt_number: int, age_band: str) -> str:
    acceptable = exercise.get("acceptable_answers") or []
    return (
        "EXERCISE:\n"
        f"Question: {exercise['question_text']}\n"
        f"Expected Answer: {exercise['expected_answer']}\n"
        f"Also Acceptable: {', '.join(acceptable) or 'None'}\n"
        f"Answer Type: {exercise.get('answer_type', 'TEXT')}\n"
        f"Exercise Type: {exercise['type']}\n\n"
        f'STUDENT\'S ANSWER: "{submitted_answer}"\n\n'
        f"ATTEMPT NUMBER: {attempt_number}\n\n"
        + _feedback_guidelines(attempt_number, exercise["expected_answer"], age_band)
    )


def parse_verdict(raw: str) -> JudgeVerdict:
    """Extract the JSON verdict from model output.

    Raises ValueError when the output carries no usable verdict.
    """
    json_match = re.search(r"\{[\s\S]*\}", raw or "")
    if not json_match:
        raise ValueError("No JSON object in judge response")
    parsed = json.loads(json_match.group())
    is_correct = parsed.get("isCorrect", parsed.get("is_correct"))
    if not isinstance(is_correct, bool):
        raise ValueError("Judge response missing boolean isCorrect")
    feedback = str(parsed.get("feedback") or "").strip()
    if not feedback:
        feedback = "Great job!" if is_correct else "Not quite. Try again!"
    try:
        confidence = float(parsed.get("confidence", 1.0))
    except (TypeError, ValueError):
        confidence = 1.0
    return JudgeVerdict(is_correct=is_correct, feedback=feedback, confidence=confidence)


class AnswerJudge:
    """Gemini-backed correctness oracle."""

    def __init__(self, provider: str = "gemini", model: str = "gemini-2.0-flash",
                 timeout: float = DEFAULT_TIMEOUT_SECONDS, api_key: str | None = None) -> None:
        self.provider = provider
        self.model = model
        self.timeout = timeout
        self.api_key = api_key

    def judge(self, exercise: Mapping[str, Any], submitted_answer: str,
              attempt_number: int, age_band: str = "OLDER") -> JudgeVerdict:
        prompt = build_judge_prompt(exercise, submitted_answer, attempt_number, age_band)
        try:
            raw, meta = resilient_llm_call(
                self.provider, self.model, prompt,
                system=JUDGE_SYSTEM_PROMPT, timeout=self.timeout, api_key=self.api_key,
            )
            verdict = parse_verdict(raw)
        except Exception as exc:
            logger.error("Answer judge failed for exercise %s: %s", exercise.get("id"), exc)
            raise ExternalDependencyError() from exc
        logger.info(
            "Judged exercise %s attempt %d: correct=%s (%dms)",
            exercise.get("id"), attempt_number, verdict.is_correct, meta.get("latency_ms", 0),
        )
        return verdict
