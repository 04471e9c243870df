"""Entity and relation extraction from conversations using an LLM."""

import asyncio
import json
import logging
import re
from typing import Any

from .errors import CompletionError
from .llm_client import LLMClient
from .models import ExtractedEntity, ExtractedRelation, ExtractionResult

logger = logging.getLogger(__name__)

CONTEXT_MESSAGES = 6

EXTRACTION_PROMPT = """Extract entities and relationships from this conversation. Return JSON only.

Entity types: memory, person, project, concept, event, preference
Relation types: related_to, mentioned_with, belongs_to, caused_by, contradicts, depends_on

Rules:
- Only extract CONCRETE, SPECIFIC entities worth remembering long-term
- Do NOT extract tools or services as entities (those are tracked automatically)
- "person" must be a real named individual, never vague references like "the user"
- "project" must be a real named project, product or organization, never a generic description
- "concept" is only for genuinely important technical or domain concepts
- "label" is a proper noun or short specific identifier (1-4 words)
- "body" is the factual detail worth remembering
- Set "category": "core" only for durable facts about the user's identity
- For relations, use the label of the entity as source/target
- If there's nothing worth extracting, return empty arrays
- Prefer FEWER high-quality extractions over many low-quality ones

Return format:
{
  "entities": [{"type": "person", "label": "Sarah", "body": "Frontend engineer, works on the dashboard"}],
  "relations": [{"source": "Sarah", "target": "Dashboard", "relation": "belongs_to"}]
}"""

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


class EntityExtractor:
    """Extracts candidate entities and relations from a conversation window."""

    def __init__(
        self,
        llm: LLMClient,
        timeout: float | None = 30.0,
        context_messages: int = CONTEXT_MESSAGES,
    ) -> None:
        """Initialize the extractor.

        Args:
            llm: Completion client used for extraction.
            timeout: Seconds to wait for the completion, None for no limit.
            context_messages: How many trailing user and assistant messages to send.
        """
        self.llm = llm
        self.timeout = timeout
        self.context_messages = context_messages

    async def extract(self, messages: list[dict[str, Any]]) -> ExtractionResult:
        """Extract entities and relations from a conversation.

        Args:
            messages: The conversation messages, oldest first.

        Returns:
            The extraction, empty if nothing was found or the output is malformed.

        Raises:
            CompletionError: If the completion call fails or times out.
        """
        if not messages:
            return ExtractionResult()

        conversation = self._format_conversation(messages)
        if not conversation:
            return ExtractionResult()

        try:
            content = await asyncio.wait_for(
                self.llm.complete(conversation, system=EXTRACTION_PROMPT),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise CompletionError(f"Extraction timed out after {self.timeout}s") from e

        return self._parse_response(content)

    def _format_conversation(self, messages: list[dict[str, Any]]) -> str:
        """Format the trailing user and assistant turns as "role: content" lines."""
        lines = []
        for msg in messages:
            role = msg.get("role", "unknown")
            content = msg.get("content") or ""
            if role in ("user", "assistant") and content:
                lines.append(f"{role}: {content}")
        return "\n".join(lines[-self.context_messages :])

    def _parse_response(self, content: str) -> ExtractionResult:
        """Parse the LLM response, tolerating prose and code fences around the JSON.

        Args:
            content: The raw LLM response.

        Returns:
            The parsed extraction, empty on any parse error.
        """
        text = content.strip()
        if text.startswith("```"):
            text = "\n".join(line for line in text.split("\n") if not line.startswith("```"))

        match = _JSON_OBJECT.search(text)
        if not match:
            logger.warning("Extraction response contains no JSON object")
            return ExtractionResult()

        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            logger.warning("Failed to parse extraction response: %s", e)
            return ExtractionResult()

        if not isinstance(data, dict):
            return ExtractionResult()

        raw_entities = data.get("entities")
        raw_relations = data.get("relations")

        entities = []
        for item in raw_entities if isinstance(raw_entities, list) else []:
            entity = self._parse_entity(item)
            if entity is not None:
                entities.append(entity)
            else:
                logger.warning("Skipping invalid entity item: %r", item)

        relations = []
        for item in raw_relations if isinstance(raw_relations, list) else []:
            relation = self._parse_relation(item)
            if relation is not None:
                relations.append(relation)
            else:
                logger.warning("Skipping invalid relation item: %r", item)

        return ExtractionResult(entities=entities, relations=relations)

    def _parse_entity(self, item: Any) -> ExtractedEntity | None:
        if not isinstance(item, dict):
            return None
        entity_type = _text(item.get("type"))
        label = _text(item.get("label"))
        if not entity_type or not label:
            return None
        return ExtractedEntity(
            type=entity_type,
            label=label,
            body=_text(item.get("body")),
            category=_text(item.get("category")) or None,
        )

    def _parse_relation(self, item: Any) -> ExtractedRelation | None:
        if not isinstance(item, dict):
            return None
        source = _text(item.get("source"))
        target = _text(item.get("target"))
        relation = _text(item.get("relation"))
        if not source or not target or not relation:
            return None
        return ExtractedRelation(source=source, target=target, relation=relation)


def _text(value: Any) -> str:
    if value is None or isinstance(value, (dict, list)):
        return ""
    return str(value).strip()
