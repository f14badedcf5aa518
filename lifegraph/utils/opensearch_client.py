"""
OpenSearch client wrapper for the reference notes index.
"""

from typing import Any, Dict, List, Optional

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import OpenSearchException
from requests_aws4auth import AWS4Auth

from .config import OpenSearchConfig
from .logging_config import get_logger

logger = get_logger(__name__)

NOTES_INDEX_BODY = {
    'mappings': {
        'properties': {
            'id': {'type': 'keyword'},
            'source': {'type': 'keyword'},
            'title': {'type': 'text'},
            'content': {'type': 'text'},
            'url': {'type': 'keyword'},
            'type': {'type': 'keyword'},
            'tags': {'type': 'keyword'},
            'created_at': {'type': 'date'},
            'updated_at': {'type': 'date'},
        }
    }
}


class OpenSearchError(Exception):
    """Custom exception for OpenSearch errors."""
    pass


class OpenSearchClient:
    """OpenSearch client with AWS authentication and error handling."""

    def __init__(self, config: OpenSearchConfig):
        """
        Initialize OpenSearch client.

        Args:
            config: OpenSearchConfig instance with connection parameters
        """
        self.config = config
        self.index_name = config.index_name

        # Get AWS credentials and create auth
        credentials = boto3.Session().get_credentials()
        auth = AWS4Auth(region=config.region, service=config.service, refreshable_credentials=credentials)
        endpoint = config.endpoint
        if '://' in endpoint:
            # Remove protocol if present
            endpoint = endpoint.split('://', 1)[1]

        self.client = OpenSearch(hosts=[{
            'host': endpoint,
            'port': config.port
        }],
                                 http_auth=auth,
                                 use_ssl=True,
                                 verify_certs=True,
                                 connection_class=RequestsHttpConnection)

        logger.info(f'Initialized OpenSearch client for endpoint: {config.endpoint}')

    def create_index_if_not_exists(self) -> str:
        """
        Create the notes index if it doesn't exist.

        Returns:
            'exists', 'created' or 'failed'
        """
        try:
            if self.client.indices.exists(index=self.index_name):
                logger.debug(f'Index {self.index_name} already exists')
                return 'exists'

            response = self.client.indices.create(index=self.index_name, body=NOTES_INDEX_BODY)
            if response.get('acknowledged', False):
                logger.info(f'Created index {self.index_name}')
                return 'created'
            return 'failed'
        except OpenSearchException as e:
            logger.error(f'Error creating index {self.index_name}: {e}')
            raise OpenSearchError(f'Failed to create index: {e}')

    def index_document(self, document: Dict[str, Any]) -> bool:
        """
        Index a note. The note's ``id`` field becomes the document id.

        Args:
            document: Note fields matching the index mapping

        Returns:
            True if indexing was successful, False otherwise
        """
        try:
            response = self.client.index(index=self.index_name, body=document, id=document.get('id'))

            success = response.get('result') in ['created', 'updated']
            if success:
                logger.debug(f'Indexed document in {self.index_name}')
            else:
                logger.warning(f'Unexpected result indexing document: {response}')
            return success

        except OpenSearchException as e:
            logger.error(f'Error indexing document: {e}')
            raise OpenSearchError(f'Failed to index document: {e}')

    def keyword_search(self, query_text: str, top_k: int = 5, source: Optional[str] = None) -> List[Dict[str, Any]]:
        """Perform keyword search over note titles and bodies.

        Args:
            query_text: Text query
            top_k: Number of results to return
            source: Optional source filter (e.g. 'notion')

        Returns:
            List of search results with scores and documents
        """
        query: Dict[str, Any] = {'bool': {'must': [{'multi_match': {'query': query_text, 'fields': ['title^2', 'content']}}]}}
        if source:
            query['bool']['filter'] = [{'term': {'source': source}}]

        try:
            response = self.client.search(index=self.index_name, body={'size': top_k, 'query': query})

            results = []
            for hit in response['hits']['hits']:
                results.append({'id': hit['_id'], 'score': hit['_score'], 'document': hit['_source']})

            logger.debug(f'Keyword search returned {len(results)} results')
            return results

        except OpenSearchException as e:
            logger.error(f'Error performing keyword search: {e}')
            raise OpenSearchError(f'Keyword search failed: {e}')

    def delete_document(self, doc_id: str) -> bool:
        """
        Delete a note from the index.

        Args:
            doc_id: Document ID to delete

        Returns:
            True if deletion was successful, False otherwise
        """
        try:
            response = self.client.delete(index=self.index_name, id=doc_id)

            success = response.get('result') == 'deleted'
            if success:
                logger.debug(f'Deleted document {doc_id} from {self.index_name}')
            else:
                logger.warning(f'Document {doc_id} not found for deletion')
            return success

        except OpenSearchException as e:
            # OpenSearchException args: (status_code, error_type, error_info)
            if len(e.args) >= 2 and (e.args[0] == 404 or e.args[1] == 'not_found'):
                logger.warning(f'Document {doc_id} not found for deletion')
                return False
            logger.error(f'Error deleting document {doc_id}: {e}')
            raise OpenSearchError(f'Failed to delete document: {e}')

    def health_check(self) -> bool:
        """
        Perform a health check on the OpenSearch service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            response = self.client.indices.exists(index=self.index_name)
            return response in [True, False]

        except OpenSearchException as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False
