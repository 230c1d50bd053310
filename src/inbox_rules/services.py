"""
Build the engine's collaborators from settings
"""
from typing import Optional

from .actions.executor import ActionExecutor
from .actions.webhook import WebhookClient
from .ai.arguments import ArgumentSynthesizer
from .ai.chooser import AIRuleChooser
from .ai.llm import LanguageModel, OpenAIModel
from .config import Settings
from .database.repository import Repository
from .providers.base import EmailProvider
from .providers.factory import create_provider
from .rate_limit import RateLimitGate
from .rules.engine import RulesEngine
from .scheduler.scheduler import DelayedActionScheduler


def build_llm(settings: Settings) -> LanguageModel:
    return OpenAIModel(api_key=settings.openai_api_key, model=settings.openai_model,
                       timeout=settings.llm_timeout_seconds)


def build_executor(repo: Repository, provider: EmailProvider, settings: Settings) -> ActionExecutor:
    return ActionExecutor(
        repo,
        provider,
        webhook=WebhookClient(timeout=settings.webhook_timeout_seconds),
        rate_limit=RateLimitGate(repo),
        max_retries=settings.max_action_retries,
        base_delay=settings.retry_base_delay_seconds,
    )


def build_engine(repo: Repository, provider: EmailProvider, settings: Settings,
                 llm: Optional[LanguageModel] = None) -> RulesEngine:
    llm = llm or build_llm(settings)
    return RulesEngine(
        repo,
        provider,
        chooser=AIRuleChooser(llm),
        synthesizer=ArgumentSynthesizer(llm),
        executor=build_executor(repo, provider, settings),
    )


def build_scheduler(repo: Repository, settings: Settings, provider_factory=None) -> DelayedActionScheduler:
    """`provider_factory(account)` defaults to the configured provider for each account"""
    provider_factory = provider_factory or (lambda account: create_provider(account, settings))
    return DelayedActionScheduler(
        repo,
        executor_factory=lambda account: build_executor(repo, provider_factory(account), settings),
        webhook=WebhookClient(timeout=settings.webhook_timeout_seconds),
        batch_size=settings.sweep_batch_size,
        processing_timeout_minutes=settings.processing_timeout_minutes,
    )
