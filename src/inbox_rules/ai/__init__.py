"""
Language-model collaborators: rule chooser, argument synthesizer, reply drafter
"""
from .arguments import ActionItem, ArgumentSynthesizer
from .chooser import AIRuleChooser, ChooseRuleResult
from .draft import ReplyDrafter
from .llm import FunctionCall, FunctionSchema, LanguageModel, LLMError, OpenAIModel

__all__ = [
    'ActionItem',
    'ArgumentSynthesizer',
    'AIRuleChooser',
    'ChooseRuleResult',
    'ReplyDrafter',
    'FunctionCall',
    'FunctionSchema',
    'LanguageModel',
    'LLMError',
    'OpenAIModel',
]
