"""
Language-model capability: one structured function call per request
"""
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional

import openai
import structlog
from openai import OpenAI

logger = structlog.get_logger(__name__)


class LLMError(Exception):
    """The model could not be reached or answered with a transport-level error"""


@dataclass
class FunctionSchema:
    name: str
    description: str
    parameters: Dict


@dataclass
class FunctionCall:
    name: str
    arguments: Dict


class LanguageModel(ABC):
    @abstractmethod
    def call_function(self, system: str, prompt: str, functions: List[FunctionSchema]) -> Optional[FunctionCall]:
        """
        Ask the model to call exactly one of `functions`. Returns None when the
        model refuses or its answer cannot be parsed.
        """


class OpenAIModel(LanguageModel):
    def __init__(self, api_key: Optional[str] = None, model: str = 'gpt-4o-mini', timeout: float = 30.0,
                 client: Optional[OpenAI] = None):
        self.client = client or OpenAI(api_key=api_key, timeout=timeout, max_retries=2)
        self.model = model

    def call_function(self, system: str, prompt: str, functions: List[FunctionSchema]) -> Optional[FunctionCall]:
        tools = [
            {
                'type': 'function',
                'function': {'name': f.name, 'description': f.description, 'parameters': f.parameters},
            }
            for f in functions
        ]
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {'role': 'system', 'content': system},
                    {'role': 'user', 'content': prompt},
                ],
                tools=tools,
                tool_choice='required',
            )
        except openai.APIError as e:
            raise LLMError(str(e)) from e

        if not response.choices:
            logger.warning("Model returned no choices", model=self.model)
            return None
        message = response.choices[0].message
        if getattr(message, 'refusal', None):
            logger.warning("Model refused", model=self.model, refusal=message.refusal)
            return None
        if not message.tool_calls:
            logger.warning("Model did not call a function", model=self.model)
            return None

        call = message.tool_calls[0]
        try:
            arguments = json.loads(call.function.arguments or '{}')
        except json.JSONDecodeError:
            logger.warning("Unparseable function arguments", function=call.function.name)
            return None
        if not isinstance(arguments, dict):
            return None
        return FunctionCall(name=call.function.name, arguments=arguments)
