"""PRP document extraction using Claude.

A Product Requirement Prompt is a markdown planning document: a goal, the
reasons behind it, what to build, success criteria, a context section of
references and file trees, and an ordered list of implementation tasks.
Claude turns the markdown into one structured candidate record; this module
only checks that the reply has the promised shape.
"""

from __future__ import annotations

import json
import logging

import anthropic
from pydantic import ValidationError as PydanticValidationError

from prpstore.config import DEFAULT_MAX_DOCUMENT_CHARS, DEFAULT_MODEL
from prpstore.errors import (
    MALFORMED,
    NOT_CONFIGURED,
    TOO_LARGE,
    UNAVAILABLE,
    ExtractionError,
)
from prpstore.schemas import CandidateDocument

logger = logging.getLogger(__name__)

MAX_TOKENS = 8192

EXTRACTION_PROMPT = """\
You are a planning document parser. Convert the following Product Requirement \
Prompt (PRP) markdown document into a single JSON record.

A PRP usually has these sections (headings vary): Goal, Why, What, Success \
Criteria, All Needed Context (documentation references, current and desired \
codebase trees, known gotchas), and an Implementation Blueprint with an ordered \
task list. Each task may name a file to create or modify, an existing pattern \
to mirror, and pseudocode.

## Document

{content}

## Instructions

Respond with a JSON object in exactly this shape:
{{
  "name": "short document name, usually the H1 title",
  "description": "one or two sentence summary",
  "goal": "the goal statement",
  "why": ["each reason the work matters"],
  "what": "the body describing what will be built",
  "success_criteria": ["each success criterion, without checkbox markup"],
  "context": {{
    "references": [
      {{
        "category": "url|file|doc|docfile",
        "target": "the URL, repository path, or documentation name",
        "reason": "why the reader needs it",
        "section": "specific section, if named",
        "critical": false
      }}
    ],
    "current_tree": "current codebase tree, verbatim",
    "desired_tree": "desired codebase tree, verbatim",
    "known_gotchas": "known gotchas and library quirks, verbatim"
  }},
  "items": [
    {{
      "description": "what the task does",
      "file_path": "file the task creates or modifies, or null",
      "pattern": "existing code pattern to mirror, or null",
      "pseudocode": "pseudocode for the task, or null",
      "status": "pending|in_progress|completed"
    }}
  ]
}}

List items in the order the document gives them. Use empty strings or empty \
lists for sections the document does not have. Do not invent content.
Respond ONLY with valid JSON, no other text.
"""


class DocumentExtractor:
    """Turns PRP markdown into a validated CandidateDocument.

    The reply is either accepted as-is or rejected with an ExtractionError;
    it is never repaired or re-requested. Transport-level retries are left to
    the Anthropic client's own ``max_retries``.
    """

    def __init__(
        self,
        client: anthropic.Anthropic | None,
        model: str = DEFAULT_MODEL,
        max_chars: int = DEFAULT_MAX_DOCUMENT_CHARS,
        max_tokens: int = MAX_TOKENS,
    ) -> None:
        self._client = client
        self._model = model
        self._max_chars = max_chars
        self._max_tokens = max_tokens

    def extract(self, content: str) -> CandidateDocument:
        if not content.strip() or len(content) > self._max_chars:
            logger.info(
                f"Rejected document of {len(content)} chars (limit {self._max_chars})"
            )
            raise ExtractionError(TOO_LARGE)
        if self._client is None:
            raise ExtractionError(NOT_CONFIGURED)

        prompt = EXTRACTION_PROMPT.format(content=content)
        try:
            response = self._client.messages.create(
                model=self._model,
                max_tokens=self._max_tokens,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.APIError as e:
            logger.error(f"API error during document extraction: {e}")
            raise ExtractionError(UNAVAILABLE) from e

        if getattr(response, "stop_reason", None) == "max_tokens":
            logger.warning("Extraction reply was cut off at the token limit")
            raise ExtractionError(MALFORMED)

        return parse_response(response)


def _strip_code_fences(text: str) -> str:
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else text[3:]
        if text.endswith("```"):
            text = text[:-3]
        text = text.strip()
    return text


def parse_response(response: anthropic.types.Message) -> CandidateDocument:
    """Parse Claude's JSON reply into a CandidateDocument."""
    if not response.content:
        logger.warning("Empty extraction response")
        raise ExtractionError(MALFORMED)
    text = _strip_code_fences(getattr(response.content[0], "text", "").strip())

    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        logger.warning(f"Failed to parse extraction JSON: {text[:200]}")
        raise ExtractionError(MALFORMED) from None

    try:
        return CandidateDocument.model_validate(data)
    except PydanticValidationError as e:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
        logger.warning(f"Extraction reply failed validation on: {', '.join(fields)}")
        raise ExtractionError(MALFORMED) from None
