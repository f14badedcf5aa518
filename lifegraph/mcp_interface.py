"""
MCP Interface Layer using fastmcp for agent orchestration.
"""
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP

from .models.candidates import EntityCandidate, MemoryCandidate
from .models.core import Entity, Thread
from .models.results import is_error
from .services.extraction_schemas import ConfirmationPayload, SchemaValidationError
from .services.memory_management import MemoryManagementError, MemoryManagementService
from .utils.config import config
from .utils.health_check import get_system_info
from .utils.logging_config import get_logger

logger = get_logger(__name__)

# Initialize FastMCP application
mcp = FastMCP('Life Graph')
memory_service = MemoryManagementService.connect(config)
threads: Dict[str, Thread] = {}


def entity_candidate_to_dict(candidate: EntityCandidate) -> Dict[str, Any]:
    """Serialize in the extraction item shape so clients can send it back to confirm."""
    item = {
        'name': candidate.name,
        'type': candidate.type.value,
        'domain': candidate.domain.value,
        'needsConfirmation': candidate.needs_confirmation,
        'description': candidate.description,
        'relationship': candidate.relationship,
        'priority': candidate.priority.value if candidate.priority else None,
        'date': candidate.date,
        'targetDate': candidate.target_date,
        'confidence': candidate.confidence,
    }
    return {key: value for key, value in item.items() if value is not None}


def memory_candidate_to_dict(candidate: MemoryCandidate) -> Dict[str, Any]:
    item = {
        'content': candidate.content,
        'importance': candidate.importance.value,
        'category': candidate.category.value,
        'entityNames': candidate.entity_names,
        'tags': candidate.tags,
    }
    if candidate.expires_at:
        item['expiresAt'] = candidate.expires_at.isoformat()
    return item


def entity_to_dict(entity: Entity) -> Dict[str, Any]:
    return {
        'id': entity.id,
        'name': entity.name,
        'type': entity.type.value,
        'domain': entity.domain.value,
        'description': entity.description,
        'pendingConfirmation': entity.pending_confirmation,
    }


def _thread(thread_id: str) -> Thread:
    if thread_id not in threads:
        threads[thread_id] = Thread(id=thread_id)
    return threads[thread_id]


@mcp.tool()
def extract_document(text: str, filename: Optional[str] = None) -> Dict[str, Any]:
    """Extract a summary, life domains and entity candidates from a document.

    Args:
        text: Full document text
        filename: Optional document name

    Returns:
        Dict with summary, domains, entities and topicsNotCovered; candidates are not stored

    Raises:
        Exception: If extraction fails
    """
    result = memory_service.extract_document(text, filename)
    if is_error(result):
        raise Exception(f'Document extraction failed: {result.error} ({result.code.value})')

    return {
        'summary': result.summary,
        'domains': [{'type': d.type.value, 'description': d.description} for d in result.domains],
        'entities': [entity_candidate_to_dict(c) for c in result.entities],
        'topicsNotCovered': result.topics_not_covered,
    }


@mcp.tool()
def extract_turn(user_message: str, assistant_message: str) -> Dict[str, List[Dict[str, Any]]]:
    """Extract new entity and memory candidates from one exchange.

    Args:
        user_message: What the user said
        assistant_message: The assistant's reply

    Returns:
        Dict with entities and memories awaiting confirmation
    """
    extraction = memory_service.extract_turn(user_message, assistant_message)
    logger.debug(f'MCP turn extraction returned {len(extraction.entities)} entities, {len(extraction.memories)} memories')
    return {
        'entities': [entity_candidate_to_dict(c) for c in extraction.entities],
        'memories': [memory_candidate_to_dict(c) for c in extraction.memories],
    }


@mcp.tool()
def confirm_candidates(entities: List[Dict[str, Any]],
                       memories: Optional[List[Dict[str, Any]]] = None,
                       source_type: str = 'thread',
                       source_id: Optional[str] = None) -> Dict[str, Any]:
    """Store candidates the user approved.

    Args:
        entities: Entity candidates as returned by extract_document or extract_turn
        memories: Memory candidates as returned by extract_turn
        source_type: thread, capture or upload
        source_id: Id of the originating thread, capture or upload

    Returns:
        Dict with the stored entities, created entity ids and memory count

    Raises:
        Exception: If the payload is invalid or storing fails
    """
    try:
        payload = ConfirmationPayload.from_data({'entities': entities, 'memories': memories or []})
        result = memory_service.confirm(payload.entities, payload.memories, source_type, source_id)
    except (SchemaValidationError, MemoryManagementError, ValueError) as e:
        logger.error(f'Error in MCP confirm: {e}')
        raise Exception(f'Confirm failed: {e}')

    return {
        'entities': [entity_to_dict(e) for e in result.entities],
        'created': [e.id for e in result.created],
        'relationships': len(result.relationships),
        'memories': len(result.memories),
    }


@mcp.tool()
def add_message(thread_id: str, role: str, content: str) -> int:
    """Append a message to a conversation thread; returns the new message count."""
    if role not in ('user', 'assistant'):
        raise ValueError('role must be user or assistant')
    thread = _thread(thread_id)
    thread.add_message(role, content)
    return len(thread.messages)


@mcp.tool()
def prepare_context(thread_id: str) -> Dict[str, Any]:
    """Compact a thread's history for the next model call.

    Returns:
        Dict with messages (role/content), summary, wasCompacted and estimatedTokens
    """
    managed = memory_service.prepare_context(_thread(thread_id))
    return {
        'messages': [m.to_prompt() for m in managed.messages],
        'summary': managed.summary,
        'wasCompacted': managed.was_compacted,
        'estimatedTokens': managed.estimated_tokens,
    }


@mcp.tool()
def relevant_entities(query: str, max_entities: int = 15) -> List[Dict[str, Any]]:
    """Entities most relevant to a query, best first."""
    if not query or not query.strip():
        return []
    return [entity_to_dict(e) for e in memory_service.relevant_entities(query, max_entities)]


@mcp.tool()
def related_graph(entity_id: str, max_depth: int = 2) -> Dict[str, Any]:
    """Entities and relationships within max_depth hops of an entity.

    Raises:
        Exception: If the entity is unknown
    """
    try:
        subgraph = memory_service.related_graph(entity_id, max_depth)
    except MemoryManagementError as e:
        logger.error(f'Error in MCP related_graph: {e}')
        raise Exception(f'Graph query failed: {e}')

    return {
        'nodes': [dict(entity_to_dict(n), depth=subgraph.depths[n.id]) for n in subgraph.nodes],
        'edges': [{
            'id': r.id,
            'source': r.source_id,
            'target': r.target_id,
            'type': r.type.value,
            'weight': r.weight
        } for r in subgraph.edges],
    }


@mcp.tool()
def entity_path(from_id: str, to_id: str, max_depth: int = 4) -> Optional[List[Dict[str, Any]]]:
    """Shortest chain of entities connecting two entities; None when there is no path within max_depth."""
    try:
        path = memory_service.entity_path(from_id, to_id, max_depth)
    except MemoryManagementError as e:
        logger.error(f'Error in MCP entity_path: {e}')
        raise Exception(f'Path query failed: {e}')
    return [entity_to_dict(e) for e in path] if path is not None else None


@mcp.tool()
def approve_entity(entity_id: str) -> Dict[str, Any]:
    """Approve an entity waiting for confirmation, such as a focus."""
    try:
        return entity_to_dict(memory_service.approve_entity(entity_id))
    except MemoryManagementError as e:
        raise Exception(f'Approve failed: {e}')


@mcp.tool()
def delete_entity(entity_id: str) -> bool:
    """Delete an entity and its relationships. Memories that mention it are kept."""
    try:
        memory_service.delete_entity(entity_id)
    except MemoryManagementError as e:
        raise Exception(f'Delete failed: {e}')
    return True


@mcp.tool()
def add_note(title: str, content: str, source: Optional[str] = None, tags: Optional[List[str]] = None) -> Dict[str, Any]:
    """Add a note to the reference notes index.

    Returns:
        Dict with the note id, title and source
    """
    try:
        note = memory_service.add_reference_note(title, content, source=source, tags=tags or [])
    except MemoryManagementError as e:
        logger.error(f'Error in MCP add_note: {e}')
        raise Exception(f'Add note failed: {e}')
    return {'id': note.id, 'title': note.title, 'source': note.source}


@mcp.tool()
def remove_note(note_id: str) -> bool:
    """Remove a note from the reference notes index; False when it was not found."""
    try:
        return memory_service.remove_reference_note(note_id)
    except MemoryManagementError as e:
        raise Exception(f'Remove note failed: {e}')


@mcp.tool()
def system_info() -> Dict[str, Any]:
    """Service configuration and per-component health for Bedrock, Neptune and OpenSearch."""
    return get_system_info()


if __name__ == '__main__':
    transport = config.mcp.transport
    host = config.mcp.host
    port = config.mcp.port
    mcp.run(transport=transport, host=host, port=port)
