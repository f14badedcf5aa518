"""
Entity and memory extraction pipeline.

Stage 1 reads a whole document, Stage 2 reads one user/assistant exchange.
Both return candidates for the confirmation workflow; nothing here writes
to the knowledge graph.
"""

import re
from typing import Iterable, List, Optional, Sequence, Union

from ..models.candidates import (DocumentExtraction, EntityCandidate, MemoryCandidate, OnboardingStatus, TurnExtraction)
from ..models.core import Entity, EntityType, Memory, Message, SourceType
from ..models.results import ErrorCode, LLMError, is_error
from ..utils.config import ExtractionConfig, config
from ..utils.logging_config import get_logger
from ..utils.provider_registry import LLMProvider
from .extraction_schemas import DocumentPayload, SchemaValidationError, ThreadMemoryPayload, TurnPayload

logger = get_logger(__name__)

DOCUMENT_PROMPT = """You are an expert at understanding people's lives from their personal documents.
Analyze this document comprehensively and extract ALL relevant information.

EXTRACTION RULES:
1. PEOPLE: Extract everyone mentioned BY NAME with their relationship to the user
   - Put the relationship (wife, son, colleague) in the "relationship" field
   - Never create an entity for an unnamed reference such as "my wife" or "a startup"

2. DOMAINS: Identify which life areas are covered
   - work: career, business, clients, projects
   - family: spouse, children, parents, home
   - sport: fitness, training, races
   - personal: hobbies, side projects, learning
   - health: wellness, medical, mental health

3. GOALS: Explicit outcomes the user wants to achieve
   - "I want to...", "I need to...", "my goal is...", "hoping to..."
   - priority: "my main goal", "A-race" = critical; "would like to" = active; "maybe", "someday" = background
   - Include targetDate when mentioned

4. FOCUSES: Interpretive life themes synthesized across several statements (ALWAYS set needsConfirmation=true)
   - Never copy a single sentence; name the underlying theme in 2-4 words
   - Examples: "Work-Life Balance", "Structure & Control"

5. EVENTS: Birthdays, anniversaries, races, deadlines, with dates when mentioned

6. PROJECTS and COMPANIES: Only when explicitly named

7. TOPICS NOT COVERED: Life areas not mentioned that would be good to ask about

CRITICAL: Only extract what is EXPLICITLY mentioned. Do not invent or hallucinate."""

TURN_PROMPT = """Analyze this conversation exchange and extract NEW entities and memorable facts.

## ENTITIES TO EXTRACT
People, projects, companies, events, goals mentioned that the user might want to track.

ONLY extract entities that are:
- Explicitly named in the user's message
- Not already known (check the existing entities list)
- Specific enough to be useful (not generic terms)

For people, include their relationship/context (e.g., "colleague at Nike", "wife").

## MEMORIES TO EXTRACT
Facts about the user worth remembering for future conversations:
- Preferences (how they like to work, communicate)
- Personal facts (family, important dates)
- Decisions made
- Events or deadlines mentioned
- Insights or patterns they've noticed

CRITICAL - DO NOT EXTRACT:
- Information already in the "existing entities" or "existing memories" lists
- Generic statements or pleasantries
- Things the assistant said (only extract what the USER reveals)
- Duplicate or near-duplicate information

Set confidence based on how clearly the entity/fact was mentioned:
- 0.9-1.0: Explicitly named with details
- 0.7-0.8: Clearly mentioned but less context
- 0.5-0.6: Inferred from context (lower priority)

Return empty arrays if there's nothing new worth extracting."""

THREAD_MEMORY_PROMPT = """You are analyzing a conversation to extract memorable facts about the user.

Extract facts that would be useful to remember for future conversations:
- User preferences (how they like to work, communicate, etc.)
- Personal facts (family members, pets, important dates)
- Decisions made (chose X over Y, committed to something)
- Events (upcoming trips, deadlines, milestones)
- Insights (patterns they've noticed, lessons learned)

IMPORTANT:
- Write facts as statements about the user: "User prefers X" or "User's wife is named Sarah"
- Only extract concrete, specific information - not general conversation
- Skip greetings, pleasantries, and meta-conversation
- High importance: life events, major decisions, key relationships
- Medium importance: preferences, ongoing projects, regular activities
- Low importance: one-off mentions, minor details

If the conversation is just casual chat with nothing memorable, set shouldRemember to false."""

# Types whose names must appear in the source text
NAMED_TYPES = {EntityType.PERSON, EntityType.COMPANY, EntityType.PROJECT}
DESCRIBED_TYPES = {EntityType.EVENT, EntityType.GOAL}

GENERIC_DETERMINERS = {'a', 'an', 'my', 'our', 'your', 'his', 'her', 'their', 'some', 'another'}
DEFINITE_DETERMINERS = {'the', 'this', 'that', 'these', 'those'}
GENERIC_NOUNS = {
    'startup', 'company', 'business', 'firm', 'agency', 'studio', 'client', 'clients', 'customer', 'team', 'project',
    'job', 'work', 'office', 'wife', 'husband', 'partner', 'spouse', 'kid', 'kids', 'child', 'children', 'son', 'daughter',
    'baby', 'mom', 'mum', 'dad', 'mother', 'father', 'parents', 'brother', 'sister', 'family', 'friend', 'friends', 'boss',
    'colleague', 'coworker', 'manager', 'doctor', 'coach', 'home', 'house', 'gym', 'race', 'trip', 'meeting', 'deadline'
}
STOPWORDS = {
    'the', 'and', 'for', 'with', 'from', 'into', 'about', 'over', 'under', 'this', 'that', 'then', 'than', 'have', 'will',
    'want', 'need', 'more', 'less', 'some', 'able', 'become', 'get', 'be', 'to', 'of', 'in', 'on', 'at', 'by', 'my', 'our'
}

_TOKEN = re.compile(r"[\w][\w&'.-]*")


def normalize_name(name: str) -> str:
    """Case-fold and collapse whitespace."""
    return ' '.join((name or '').casefold().split())


def names_match(left: str, right: str) -> bool:
    """Case-insensitive substring match in either direction."""
    a, b = normalize_name(left), normalize_name(right)
    if not a or not b:
        return False
    return a in b or b in a


def _tokens(text: str) -> List[str]:
    tokens = []
    for token in _TOKEN.findall(text.casefold()):
        token = token.strip(".'-")
        if token.endswith("'s"):
            token = token[:-2]
        if token:
            tokens.append(token)
    return tokens


def contains_phrase(text: str, phrase: str) -> bool:
    phrase = normalize_name(phrase)
    if not phrase:
        return False
    return re.search(r'(?<!\w)' + re.escape(phrase) + r'(?!\w)', normalize_name(text)) is not None


def is_generic_reference(name: str) -> bool:
    """True for unnamed references such as "my wife" or "a startup"."""
    tokens = _tokens(name)
    if not tokens:
        return True
    if tokens[0] in GENERIC_DETERMINERS:
        return True
    rest = tokens[1:] if tokens[0] in DEFINITE_DETERMINERS else tokens
    return all(token in GENERIC_NOUNS for token in rest)


def is_grounded(candidate: EntityCandidate, source_text: str) -> bool:
    """Check a candidate against the text it was extracted from.

    Named types need the full name, or for multi-word names the first name
    (three characters or more), as a whole word. Events and goals need one
    content word. Focuses are interpretive and always pass.
    """
    if candidate.type in NAMED_TYPES:
        if contains_phrase(source_text, candidate.name):
            return True
        tokens = _tokens(candidate.name)
        return len(tokens) > 1 and len(tokens[0]) >= 3 and contains_phrase(source_text, tokens[0])
    if candidate.type in DESCRIBED_TYPES:
        source_tokens = set(_tokens(source_text))
        content_words = [t for t in _tokens(candidate.name) if len(t) >= 3 and t not in STOPWORDS]
        return any(word in source_tokens for word in content_words)
    return True


def _word_set(text: str) -> set:
    return {t for t in _tokens(text) if t not in STOPWORDS}


def is_duplicate_memory(content: str, existing: Iterable[str], threshold: float) -> bool:
    """Normalized containment in either direction, or word-set Jaccard >= threshold."""
    normalized = normalize_name(content)
    words = _word_set(content)
    for other in existing:
        other_normalized = normalize_name(other)
        if not other_normalized:
            continue
        if normalized in other_normalized or other_normalized in normalized:
            return True
        other_words = _word_set(other)
        union = words | other_words
        if union and len(words & other_words) / len(union) >= threshold:
            return True
    return False


def filter_entity_candidates(candidates: Sequence[EntityCandidate],
                             source_text: str,
                             existing_names: Sequence[str] = (),
                             confidence_threshold: Optional[float] = None) -> List[EntityCandidate]:
    """Apply the confidence, generic-reference, grounding and dedup gates."""
    kept: List[EntityCandidate] = []
    for candidate in candidates:
        if confidence_threshold is not None and (candidate.confidence or 0.0) < confidence_threshold:
            logger.debug(f'Dropping {candidate.name!r}: confidence {candidate.confidence} < {confidence_threshold}')
            continue
        if candidate.type in NAMED_TYPES | {EntityType.EVENT} and is_generic_reference(candidate.name):
            logger.debug(f'Dropping generic reference {candidate.name!r}')
            continue
        if not is_grounded(candidate, source_text):
            logger.debug(f'Dropping ungrounded candidate {candidate.name!r}')
            continue
        if any(names_match(candidate.name, name) for name in existing_names):
            logger.debug(f'Dropping {candidate.name!r}: matches an existing entity')
            continue
        if any(names_match(candidate.name, other.name) for other in kept):
            logger.debug(f'Dropping {candidate.name!r}: duplicate within batch')
            continue
        kept.append(candidate)
    return kept


def filter_memory_candidates(candidates: Sequence[MemoryCandidate], existing_contents: Sequence[str],
                             threshold: float) -> List[MemoryCandidate]:
    kept: List[MemoryCandidate] = []
    for candidate in candidates:
        seen = list(existing_contents) + [m.content for m in kept]
        if is_duplicate_memory(candidate.content, seen, threshold):
            logger.debug(f'Dropping duplicate memory {candidate.content!r}')
            continue
        kept.append(candidate)
    return kept


def match_entities_to_names(names: Iterable[str], entities: Iterable[Entity]) -> List[str]:
    """Resolve entity names to ids of known entities, first match wins."""
    entities = list(entities)
    matched: List[str] = []
    for name in names:
        lowered = normalize_name(name)
        entity = next((e for e in entities if normalize_name(e.name) == lowered), None)
        if entity is None:
            entity = next((e for e in entities if names_match(e.name, name)), None)
        if entity is not None and entity.id not in matched:
            matched.append(entity.id)
    return matched


def candidate_to_memory(candidate: MemoryCandidate,
                        source_type: Union[SourceType, str],
                        source_id: Optional[str] = None,
                        entity_ids: Sequence[str] = ()) -> Memory:
    """Convert a confirmed memory candidate into a stored Memory record."""
    return Memory(content=candidate.content,
                  source_type=SourceType(source_type),
                  source_id=source_id,
                  entities=list(entity_ids),
                  importance=candidate.importance_score,
                  tags=[candidate.category.value, *candidate.tags],
                  expires_at=candidate.expires_at)


def assess_onboarding_completion(document: Optional[DocumentExtraction], collected_domains: Sequence[str],
                                 collected_entity_count: int) -> OnboardingStatus:
    """Heuristic completion check used when the onboarding model call is unavailable."""
    if document is not None and len(document.domains) >= 3 and len(document.entities) >= 10:
        domain_names = ', '.join(d.type.value for d in document.domains)
        return OnboardingStatus(is_complete=True,
                                response=f'That is a lot of useful context: {len(document.domains)} life domains and '
                                f'{len(document.entities)} people, projects and events ({domain_names}). Let us put it to work.')

    if len(collected_domains) >= 2 and collected_entity_count >= 5:
        return OnboardingStatus(is_complete=True,
                                response='I have captured quite a bit about your world. Ready when you are.')

    if collected_domains:
        return OnboardingStatus(is_complete=False,
                                response=f'I have {" and ".join(collected_domains)} so far. What else takes up mental space for you?')
    return OnboardingStatus(is_complete=False, response='Tell me more about what keeps you busy day-to-day.')


class ExtractionPipeline:
    """Turn free text into confirmation-gated entity and memory candidates."""

    def __init__(self, provider: LLMProvider, extraction_config: Optional[ExtractionConfig] = None):
        self.provider = provider
        self.config = extraction_config or config.extraction

        logger.info(f'Initialized ExtractionPipeline with provider {provider.id}')

    def extract_document(self, text: str, filename_hint: Optional[str] = None) -> Union[DocumentExtraction, LLMError]:
        """Stage 1: extract summary, domains and entity candidates from a whole document.

        Args:
            text: Full document text (not truncated)
            filename_hint: Optional document name added to the prompt

        Returns:
            DocumentExtraction (empty for a blank document), or LLMError when the model call
            fails or the response is unusable
        """
        if not text or not text.strip():
            logger.info('Empty document, nothing to extract')
            return DocumentExtraction(summary='')

        prompt = DOCUMENT_PROMPT + (f'\n\nDocument: {filename_hint}' if filename_hint else '')
        result = self.provider.extract(prompt, text, DocumentPayload.JSON_SCHEMA, temperature=self.config.document_temperature)
        if is_error(result):
            logger.error(f'Document extraction failed: {result.error} (code: {result.code.value})')
            return result

        try:
            extraction = DocumentPayload.from_data(result.data).extraction
        except SchemaValidationError as e:
            logger.error(f'Document extraction returned a non-conforming payload: {e}')
            return LLMError(error=str(e), code=ErrorCode.PARSE_ERROR)

        raw_count = len(extraction.entities)
        extraction.entities = filter_entity_candidates(extraction.entities, text)
        logger.info(f'Extracted from document: {len(extraction.entities)}/{raw_count} entities, '
                    f'{len(extraction.domains)} domains')
        return extraction

    def extract_turn(self,
                     user_text: str,
                     assistant_text: str,
                     existing_entities: Sequence[Entity] = (),
                     existing_memories: Sequence[Union[Memory, str]] = ()) -> TurnExtraction:
        """Stage 2: extract new candidates from one exchange. Fails closed to an empty result."""
        if len((user_text or '').strip()) < self.config.min_turn_chars:
            logger.debug('Turn below minimum length, skipping extraction')
            return TurnExtraction()

        memory_contents = [m.content if isinstance(m, Memory) else str(m) for m in existing_memories]

        context = ''
        if existing_entities:
            entity_list = ', '.join(f'{e.name} ({e.type.value}, {e.domain.value})'
                                    for e in existing_entities[:self.config.max_existing_entities])
            context += f'\n\nExisting entities (DO NOT re-extract these): {entity_list}'
        if memory_contents:
            context += f'\n\nExisting memories (DO NOT duplicate these): {"; ".join(memory_contents[:self.config.max_existing_memories])}'

        conversation_text = f'User message: {user_text}\n\nAssistant response: {assistant_text}'
        result = self.provider.extract(TURN_PROMPT + context, conversation_text, TurnPayload.JSON_SCHEMA)
        if is_error(result):
            logger.warning(f'Turn extraction failed: {result.error} (code: {result.code.value})')
            return TurnExtraction()

        try:
            payload = TurnPayload.from_data(result.data)
        except SchemaValidationError as e:
            logger.warning(f'Turn extraction returned a non-conforming payload: {e}')
            return TurnExtraction()

        entities = filter_entity_candidates(payload.entities,
                                            user_text,
                                            existing_names=[e.name for e in existing_entities],
                                            confidence_threshold=self.config.confidence_threshold)
        memories = filter_memory_candidates(payload.memories, memory_contents, self.config.memory_similarity_threshold)
        logger.debug(f'Turn extraction kept {len(entities)}/{len(payload.entities)} entities, '
                     f'{len(memories)}/{len(payload.memories)} memories')
        return TurnExtraction(entities=entities, memories=memories)

    def extract_thread_memories(self, messages: Sequence[Message],
                                existing_entities: Sequence[Entity] = ()) -> List[MemoryCandidate]:
        """Extract memorable facts from a whole transcript."""
        transcript = '\n\n'.join(f'{"User" if m.role == "user" else "Assistant"}: {m.content}' for m in messages
                                 if m.role in ('user', 'assistant'))
        if len(transcript) < self.config.min_thread_transcript_chars:
            return []

        entity_context = ''
        if existing_entities:
            entity_context = f'\n\nKnown entities: {", ".join(f"{e.name} ({e.type.value})" for e in existing_entities)}'

        result = self.provider.extract(THREAD_MEMORY_PROMPT + entity_context,
                                       transcript[:self.config.max_thread_transcript_chars],
                                       ThreadMemoryPayload.JSON_SCHEMA)
        if is_error(result):
            logger.warning(f'Thread memory extraction failed: {result.error}')
            return []

        try:
            payload = ThreadMemoryPayload.from_data(result.data)
        except SchemaValidationError as e:
            logger.warning(f'Thread memory extraction returned a non-conforming payload: {e}')
            return []

        if not payload.should_remember:
            return []
        return filter_memory_candidates(payload.facts, [], self.config.memory_similarity_threshold)
