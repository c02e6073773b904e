"""
OpenSearch client wrapper for top-K entity similarity search.
"""

import asyncio
from typing import List, Optional, Tuple

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection
from opensearchpy.exceptions import NotFoundError, OpenSearchException
from requests_aws4auth import AWS4Auth

from .config import OpenSearchConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class OpenSearchError(Exception):
    """Custom exception for OpenSearch errors."""
    pass


def score_to_cosine(score: float) -> float:
    """Convert an nmslib cosinesimil k-NN score, 1 / (2 - cos), back to cosine similarity."""
    if score <= 0:
        return -1.0
    return 2.0 - 1.0 / score


class OpenSearchClient:
    """OpenSearch k-NN index over entity embeddings, with AWS authentication."""

    def __init__(self, config: OpenSearchConfig):
        """
        Initialize OpenSearch client.

        Args:
            config: OpenSearchConfig instance with connection parameters
        """
        self.config = config
        self.index_name = f'{config.index_name}_entity'

        # Get AWS credentials and create auth
        credentials = boto3.Session().get_credentials()
        auth = AWS4Auth(region=config.region, service='aoss', refreshable_credentials=credentials)
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

    def _create_index_if_not_exists(self) -> str:
        if self.client.indices.exists(index=self.index_name):
            logger.debug(f'Index {self.index_name} already exists')
            return 'exists'

        index_body = {
            'mappings': {
                'properties': {
                    'id': {
                        'type': 'keyword'
                    },
                    'user_id': {
                        'type': 'keyword'
                    },
                    'name': {
                        'type': 'text'
                    },
                    'entity_type': {
                        'type': 'keyword'
                    },
                    'status': {
                        'type': 'keyword'
                    },
                    'embedding': {
                        'type': 'knn_vector',
                        'dimension': self.config.dimension,
                        'method': {
                            'name': 'hnsw',
                            'space_type': 'cosinesimil',
                            'engine': 'nmslib'
                        }
                    },
                    'updated_at': {
                        'type': 'date'
                    }
                }
            },
            'settings': {
                'index': {
                    'knn': True,
                    'knn.algo_param.ef_search': 100
                }
            }
        }

        response = self.client.indices.create(index=self.index_name, body=index_body)
        logger.info(f'Created index {self.index_name}')
        return 'created' if response.get('acknowledged', False) else 'failed'

    async def create_index_if_not_exists(self) -> str:
        """
        Create the entity index if it doesn't exist.

        Returns:
            'exists', 'created' or 'failed'

        Raises:
            OpenSearchError: If the index request fails
        """
        try:
            return await asyncio.to_thread(self._create_index_if_not_exists)
        except OpenSearchException as e:
            logger.error(f'Error creating index {self.index_name}: {e}')
            raise OpenSearchError(f'Failed to create index: {e}')

    async def index_entity(self,
                           entity_id: str,
                           user_id: str,
                           name: str,
                           entity_type: str,
                           embedding: List[float],
                           status: str = 'active',
                           updated_at: Optional[str] = None) -> bool:
        """
        Index or overwrite one entity's embedding.

        Args:
            entity_id: Entity ID, used as the document ID
            user_id: Owning user
            name: Entity display name
            entity_type: Entity type
            embedding: Vector of the entity's summary
            status: Entity lifecycle status
            updated_at: ISO timestamp of the entity's last change

        Returns:
            True if indexing was successful, False otherwise

        Raises:
            OpenSearchError: If the index request fails
        """
        document = {
            'id': entity_id,
            'user_id': user_id,
            'name': name,
            'entity_type': entity_type,
            'status': status,
            'embedding': embedding,
            'updated_at': updated_at,
        }
        try:
            response = await asyncio.to_thread(self.client.index, index=self.index_name, id=entity_id, body=document)

            success = response.get('result') in ['created', 'updated']
            if success:
                logger.debug(f'Indexed entity {entity_id} in {self.index_name}')
            else:
                logger.warning(f'Unexpected result indexing entity: {response}')
            return success

        except OpenSearchException as e:
            logger.error(f'Error indexing entity {entity_id}: {e}')
            raise OpenSearchError(f'Failed to index entity: {e}')

    async def similar(self,
                      user_id: str,
                      query_vector: List[float],
                      top_k: int = 10,
                      min_similarity: float = 0.0) -> List[Tuple[str, float]]:
        """
        Top-K active entities of one user by cosine similarity.

        Args:
            user_id: User ID to filter results
            query_vector: Query vector for similarity search
            top_k: Number of results to return
            min_similarity: Minimum cosine similarity to keep a hit

        Returns:
            List of (entity_id, cosine_similarity), most similar first

        Raises:
            OpenSearchError: If the search fails
        """
        search_body = {
            'size': top_k,
            'query': {
                'bool': {
                    'must': [{
                        'knn': {
                            'embedding': {
                                'vector': query_vector,
                                'k': top_k
                            }
                        }
                    }],
                    'filter': [{
                        'term': {
                            'user_id': user_id
                        }
                    }, {
                        'term': {
                            'status': 'active'
                        }
                    }]
                }
            },
            '_source': {
                'excludes': ['embedding']  # Don't return embedding in results
            }
        }

        try:
            response = await asyncio.to_thread(self.client.search, index=self.index_name, body=search_body)
        except OpenSearchException as e:
            logger.error(f'Error performing vector search: {e}')
            raise OpenSearchError(f'Vector search failed: {e}')

        results = []
        for hit in response['hits']['hits']:
            similarity = score_to_cosine(hit['_score'])
            if similarity >= min_similarity:
                results.append((hit['_id'], similarity))

        logger.debug(f'Vector search returned {len(results)} results for user {user_id}')
        return results

    async def set_status(self, entity_id: str, status: str) -> bool:
        """
        Update the lifecycle status of an indexed entity.

        Returns:
            True if the document was updated, False if it was not indexed
        """
        try:
            await asyncio.to_thread(self.client.update,
                                    index=self.index_name,
                                    id=entity_id,
                                    body={'doc': {
                                        'status': status
                                    }})
            return True
        except NotFoundError:
            logger.warning(f'Entity {entity_id} not indexed, status not updated')
            return False
        except OpenSearchException as e:
            logger.error(f'Error updating status of entity {entity_id}: {e}')
            raise OpenSearchError(f'Failed to update entity status: {e}')

    async def delete_entity(self, entity_id: str) -> bool:
        """
        Delete an entity's document from the index.

        Returns:
            True if deletion was successful, False if it was not indexed
        """
        try:
            response = await asyncio.to_thread(self.client.delete, index=self.index_name, id=entity_id)
            success = response.get('result') == 'deleted'
            if success:
                logger.debug(f'Deleted entity {entity_id} from {self.index_name}')
            return success
        except NotFoundError:
            logger.warning(f'Entity {entity_id} not found for deletion')
            return False
        except OpenSearchException as e:
            logger.error(f'Error deleting entity {entity_id}: {e}')
            raise OpenSearchError(f'Failed to delete entity: {e}')

    async def health_check(self) -> bool:
        """
        Perform a health check on the OpenSearch service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            response = await asyncio.to_thread(self.client.indices.exists, index=self.index_name)
            return response in [True, False]

        except Exception as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False

