"""
Text Classifier Collaborator

Contract: classify(raw_text, context) -> ParsedResponse.

The default implementation calls an OpenAI-compatible chat endpoint in
JSON mode. Interpretation of the reply is entirely the model's job; this
module only builds the prompt and validates the shape of what comes back.
"""
import json
import logging
from typing import Optional, Protocol

import openai
from openai import OpenAI
from pydantic import ValidationError as PydanticValidationError

from ...config import (
    CLASSIFIER_API_KEY, CLASSIFIER_BASE_URL, CLASSIFIER_MODEL, CLASSIFIER_TIMEOUT_SECONDS,
)
from ...models.monitoring import ClassificationContext, ParsedResponse
from ..errors import TransientCollaboratorError


logger = logging.getLogger(__name__)


class TextClassifier(Protocol):
    def classify(self, raw_text: str, context: ClassificationContext) -> ParsedResponse:
        ...


SYSTEM_PROMPT = """You review replies from job candidates to a recruiting platform's periodic check-in emails.
The platform introduced the candidate to an employer and is owed a fee if that employer hires them.
Decide whether the reply indicates the candidate works (or worked) for that employer.

Return ONLY valid JSON:
{
  "status": "STILL_EMPLOYED" | "LEFT_JOB" | "NOT_HIRED" | "UNCLEAR",
  "riskLevel": "HIGH" | "MEDIUM" | "LOW" | "CLEAR",
  "confidence": number between 0 and 1,
  "companyMentioned": "string or null",
  "hireDate": "string or null",
  "separationDate": "string or null",
  "summary": "one sentence",
  "suggestedAction": "one sentence"
}

riskLevel guide:
- HIGH: reply states or strongly implies they were hired by the introduced employer
- MEDIUM: ambiguous hints (offer pending, "started somewhere new" without naming it)
- LOW: unrelated or uninformative reply
- CLEAR: reply clearly rules out a hire by the introduced employer
If the reply is empty or irrelevant, use status UNCLEAR and riskLevel LOW."""


def extract_json(text: str) -> dict:
    """
    Extract JSON from a model response.
    Handles cases where the model wraps JSON in markdown code blocks.
    """
    text = (text or "").strip()
    if text.startswith("```json"):
        text = text[7:]
    if text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]
    return json.loads(text.strip())


class OpenAIResponseClassifier:
    """Classifies check-in replies with an OpenAI-compatible chat model."""

    def __init__(
        self,
        api_key: str = CLASSIFIER_API_KEY,
        base_url: str = CLASSIFIER_BASE_URL,
        model: str = CLASSIFIER_MODEL,
        timeout: float = CLASSIFIER_TIMEOUT_SECONDS,
        client: Optional[OpenAI] = None,
    ):
        self.client = client or OpenAI(api_key=api_key, base_url=base_url, timeout=timeout, max_retries=1)
        self.model = model

    def _build_user_content(self, raw_text: str, context: ClassificationContext) -> str:
        return (
            f"Candidate: {context.candidate_name}\n"
            f"Introduced employer: {context.employer_name}\n"
            f"Job title: {context.job_title or 'unknown'}\n"
            f"--- Reply ---\n{raw_text}"
        )

    def classify(self, raw_text: str, context: ClassificationContext) -> ParsedResponse:
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": self._build_user_content(raw_text, context)},
                ],
                response_format={"type": "json_object"},
                max_tokens=400,
                temperature=0.1,  # Low temp for consistent structured output
            )
        except openai.OpenAIError as e:
            raise TransientCollaboratorError("classifier", str(e)) from e

        content = response.choices[0].message.content if response.choices else None
        try:
            return ParsedResponse.model_validate(extract_json(content))
        except (ValueError, PydanticValidationError) as e:
            logger.warning(f"Classifier returned an unusable payload: {content!r}")
            raise TransientCollaboratorError("classifier", f"malformed classification: {e}") from e
