"""
Amazon Bedrock LLM client wrapper with retry logic and error handling.

Blocking boto3 calls run in a worker thread so callers can await them.
"""

import asyncio
import json
import random
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockLLMConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class BedrockLLMError(Exception):
    """Custom exception for Bedrock LLM errors."""
    pass


@dataclass
class ToolCall:
    """A single tool invocation requested by the model."""
    name: str
    input: Dict[str, Any] = field(default_factory=dict)
    reasoning_text: str = ''


class BedrockLLM:
    """Amazon Bedrock LLM client with retry logic and error handling."""

    def __init__(self, config: BedrockLLMConfig):
        """
        Initialize Bedrock LLM client.

        Args:
            config: BedrockLLMConfig instance with connection parameters
        """
        self.config = config
        self.model_id = config.model_id

        # Create Bedrock runtime client with timeout configuration
        self.bedrock_runtime = boto3.client(
            'bedrock-runtime',
            region_name=config.region,
            config=BotoConfig(
                connect_timeout=600,
                read_timeout=600,
                retries={'max_attempts': 0}  # We handle retries manually
            ))

        logger.info(f'Initialized Bedrock LLM client with model: {self.model_id}')

    def _inference_config(self,
                          max_tokens: Optional[int],
                          temperature: Optional[float],
                          stop_sequences: Optional[List[str]]) -> Dict[str, Any]:
        return {
            'maxTokens': max_tokens or self.config.max_tokens,
            'temperature': self.config.temperature if temperature is None else temperature,
            'stopSequences': stop_sequences or [],
        }

    async def _with_retry(self, operation: str, func, **kwargs) -> Any:
        """
        Run a blocking Bedrock call in a thread with exponential backoff.

        Args:
            operation: Name used in log lines
            func: Blocking callable
            **kwargs: Arguments for func

        Returns:
            Whatever func returns

        Raises:
            BedrockLLMError: If all retry attempts fail
        """
        for attempt in range(self.config.retry_attempts):
            try:
                logger.debug(f'Bedrock LLM {operation} attempt {attempt + 1}/{self.config.retry_attempts}')
                return await asyncio.to_thread(func, **kwargs)

            except (ClientError, BotoCoreError, json.JSONDecodeError) as e:
                logger.warning(f'Bedrock LLM attempt {attempt + 1}/{self.config.retry_attempts} failed: {e}')

                if attempt < self.config.retry_attempts - 1:
                    # Exponential backoff with jitter
                    delay = self.config.retry_delay * (2**attempt) + random.uniform(0, 1)
                    await asyncio.sleep(delay)
                else:
                    raise BedrockLLMError(f'Bedrock LLM failed after {self.config.retry_attempts} attempts: {e}')

            except Exception as e:
                logger.error(f'Unexpected error in Bedrock LLM: {e}')
                raise BedrockLLMError(f'Unexpected Bedrock LLM error: {e}')

        raise BedrockLLMError(f'Bedrock LLM failed after {self.config.retry_attempts} attempts')

    def _converse_stream(self, messages, system, inference_config) -> Tuple[str, Optional[Dict[str, Any]]]:
        stream = self.bedrock_runtime.converse_stream(modelId=self.model_id,
                                                      messages=messages,
                                                      system=system,
                                                      inferenceConfig=inference_config).get('stream')

        msg = ''
        invoke_metrics = None

        if stream:
            for event in stream:
                if 'contentBlockDelta' in event:
                    msg += event['contentBlockDelta']['delta'].get('text', '')
                if 'metadata' in event:
                    invoke_metrics = {**event['metadata']['usage'], **event['metadata']['metrics']}

        return msg, invoke_metrics

    async def generate_response(self,
                                messages: List[Dict[str, Any]],
                                system_prompt: str,
                                max_tokens: Optional[int] = None,
                                temperature: Optional[float] = None,
                                stop_sequences: Optional[List[str]] = None) -> Tuple[str, Optional[Dict[str, Any]]]:
        """
        Generate response using Bedrock LLM with retry logic.

        Args:
            messages: List of message dictionaries in Bedrock format
            system_prompt: System prompt for the conversation
            max_tokens: Maximum tokens to generate (uses config default if None)
            temperature: Temperature for generation (uses config default if None)
            stop_sequences: Stop sequences for generation

        Returns:
            Tuple of (response_text, invoke_metrics)

        Raises:
            BedrockLLMError: If all retry attempts fail
        """
        msg, invoke_metrics = await self._with_retry('converse_stream',
                                                     self._converse_stream,
                                                     messages=messages,
                                                     system=[{'text': system_prompt}],
                                                     inference_config=self._inference_config(max_tokens, temperature,
                                                                                             stop_sequences))
        logger.debug(f'Bedrock LLM response generated successfully (length: {len(msg)})')
        return msg, invoke_metrics

    def _converse_tools(self, messages, system, inference_config, tool_config) -> Optional[ToolCall]:
        response = self.bedrock_runtime.converse(modelId=self.model_id,
                                                 messages=messages,
                                                 system=system,
                                                 inferenceConfig=inference_config,
                                                 toolConfig=tool_config)

        content = response.get('output', {}).get('message', {}).get('content', [])
        text_parts = []
        tool_call = None
        for block in content:
            if 'text' in block:
                text_parts.append(block['text'])
            elif 'toolUse' in block and tool_call is None:
                tool_use = block['toolUse']
                tool_call = ToolCall(name=tool_use.get('name', ''), input=tool_use.get('input') or {})

        if tool_call is not None:
            tool_call.reasoning_text = '\n'.join(text_parts).strip()
        return tool_call

    async def invoke_tools(self,
                           messages: List[Dict[str, Any]],
                           system_prompt: str,
                           tools: List[Dict[str, Any]],
                           max_tokens: Optional[int] = None) -> Optional[ToolCall]:
        """
        Ask the model to call exactly one of the given tools.

        Args:
            messages: List of message dictionaries in Bedrock format
            system_prompt: System prompt for the conversation
            tools: Tool definitions with name, description and JSON input schema
            max_tokens: Maximum tokens to generate (uses config default if None)

        Returns:
            The first tool call in the response, or None if the model called no tool

        Raises:
            BedrockLLMError: If all retry attempts fail
        """
        tool_config = {
            'tools': [{
                'toolSpec': {
                    'name': tool['name'],
                    'description': tool['description'],
                    'inputSchema': {
                        'json': tool['input_schema']
                    }
                }
            } for tool in tools],
            'toolChoice': {
                'any': {}
            }
        }

        tool_call = await self._with_retry('converse',
                                           self._converse_tools,
                                           messages=messages,
                                           system=[{'text': system_prompt}],
                                           inference_config=self._inference_config(max_tokens, None, None),
                                           tool_config=tool_config)
        if tool_call is None:
            logger.warning('Bedrock LLM returned no tool call')
        else:
            logger.debug(f'Bedrock LLM requested tool: {tool_call.name}')
        return tool_call

    async def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock LLM service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            test_messages = [{'role': 'user', 'content': [{'text': 'Hi'}]}]
            response, _ = await self.generate_response(messages=test_messages,
                                                       system_prompt="You are a helpful assistant. Respond with just 'OK'.",
                                                       max_tokens=10,
                                                       temperature=0.0)
            return len(response.strip()) > 0

        except Exception as e:
            logger.error(f'Bedrock LLM health check failed: {e}')
            return False
