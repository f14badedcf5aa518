"""
Component health probes for the language model, graph store and notes index.
"""

from typing import Any, Callable, Dict

from .. import __version__
from .bedrock_llm import BedrockLLM
from .config import config
from .logging_config import get_logger
from .neptune_client import NeptuneClient
from .opensearch_client import OpenSearchClient

logger = get_logger(__name__)


def _probe(service: str, check: Callable[[], bool], **details: Any) -> Dict[str, Any]:
    """Run one check; connection failures become an unhealthy entry with the error text."""
    try:
        return {'healthy': check(), 'service': service, **details}
    except Exception as e:
        logger.warning(f'{service} health check failed: {e}')
        return {'healthy': False, 'service': service, 'error': str(e)}


def _neptune_healthy() -> bool:
    neptune = NeptuneClient(config.neptune)
    try:
        return neptune.health_check()
    finally:
        neptune.close()


def get_health_status() -> Dict[str, Any]:
    """Health of each backing service, keyed by component."""
    return {
        'bedrock_llm': _probe('Amazon Bedrock LLM',
                              lambda: BedrockLLM(config.bedrock_llm).health_check(),
                              model=config.bedrock_llm.model_id),
        'neptune': _probe('Amazon Neptune', _neptune_healthy, endpoint=config.neptune.endpoint),
        'opensearch': _probe('Amazon OpenSearch',
                             lambda: OpenSearchClient(config.opensearch).health_check(),
                             endpoint=config.opensearch.endpoint,
                             index=config.opensearch.index_name),
    }


def get_system_info() -> Dict[str, Any]:
    """Engine configuration plus component health."""
    health_status = get_health_status()
    healthy = all(status.get('healthy', False) for status in health_status.values())
    if not healthy:
        logger.warning('Some system components are unhealthy')

    return {
        'service_name': 'LifeGraph',
        'version': __version__,
        'healthy': healthy,
        'configuration': {
            'bedrock_llm_model': config.bedrock_llm.model_id,
            'aws_region': config.bedrock_llm.region,
            'max_context_tokens': config.context.max_context_tokens,
            'target_context_tokens': config.context.target_context_tokens,
            'min_recent_messages': config.context.min_recent_messages,
            'confidence_threshold': config.extraction.confidence_threshold,
            'max_entities': config.ranking.max_entities
        },
        'health_status': health_status
    }
