"""
Rules engine: for each message, evaluate conditions, let the model choose
among AI rules, resolve action arguments and hand off to the executor
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import structlog

from ..actions.executor import ActionExecutor
from ..ai.arguments import ActionItem, ArgumentSynthesizer
from ..ai.chooser import AIRuleChooser
from ..database.models import ActionType, ExecutedActionStatus, ExecutedRuleStatus, Rule
from ..database.repository import Repository
from ..providers.base import EmailProvider, Message, extract_email_address
from .conditions import ConditionEvaluator, PotentialMatches

logger = structlog.get_logger(__name__)


@dataclass
class RuleSelection:
    rule: Rule
    reason: str


@dataclass
class ProcessResult:
    message_id: str
    executed_rules: List = field(default_factory=list)
    skipped_reason: Optional[str] = None


@dataclass
class BatchResult:
    processed: int = 0
    skipped: int = 0
    errors: int = 0


def _has_fixed_draft_content(rule: Rule) -> bool:
    return any(
        a.type == ActionType.DRAFT_EMAIL and a.content and 'content' not in (a.templated_fields or [])
        for a in rule.actions
    )


def limit_draft_email_actions(
    resolved: Sequence[Tuple[RuleSelection, List[ActionItem]]],
) -> List[Tuple[RuleSelection, List[ActionItem]]]:
    """
    Several selected rules may each want to draft a reply; keep one draft.
    A rule with fixed draft content wins, otherwise the first selected rule.
    """
    drafting = [i for i, (_, items) in enumerate(resolved) if any(x.type == ActionType.DRAFT_EMAIL for x in items)]
    if len(drafting) <= 1:
        return list(resolved)

    keep = next((i for i in drafting if _has_fixed_draft_content(resolved[i][0].rule)), drafting[0])
    limited = []
    for index, (selection, items) in enumerate(resolved):
        if index in drafting and index != keep:
            items = [x for x in items if x.type != ActionType.DRAFT_EMAIL]
            logger.info("Dropped duplicate draft action", rule=selection.rule.name)
        limited.append((selection, items))
    return limited


class RulesEngine:
    """Engine for processing emails based on rules"""

    def __init__(self, repo: Repository, provider: EmailProvider, chooser: AIRuleChooser,
                 synthesizer: ArgumentSynthesizer, executor: ActionExecutor):
        self.repo = repo
        self.provider = provider
        self.chooser = chooser
        self.synthesizer = synthesizer
        self.executor = executor
        self.evaluator = ConditionEvaluator(repo)

    def process_email(self, account, message: Message, rerun: bool = False,
                      rules: Optional[List[Rule]] = None) -> ProcessResult:
        """Process a single email against the account's enabled rules"""
        log = logger.bind(message_id=message.id, thread_id=message.thread_id)

        if extract_email_address(message.headers.from_) == account.email.lower():
            log.debug("Skipping message sent by the account itself")
            return ProcessResult(message.id, skipped_reason='Own message')

        if self.repo.has_active_executed_rules(account.id, message.id):
            if not rerun:
                log.debug("Message already processed, skipping")
                return ProcessResult(message.id, skipped_reason='Already processed')
            cancelled = self.repo.cancel_executed_rules_for_message(account.id, message.id)
            log.info("Re-running message", cancelled=cancelled)

        if rules is None:
            rules = self.repo.list_enabled_rules(account.id)
        is_thread = self.provider.is_reply_in_thread(message)
        potential = self.evaluator.find_potential_matches(account.id, rules, message, is_thread)

        if account.multi_rule_selection_enabled:
            selections, reason = self._select_multiple(account, message, potential)
        else:
            selections, reason = self._select_single(account, message, potential)

        if not selections:
            log.info("No rule matched", reason=reason)
            executed = self.executor.run(account, message, None, [], reason)
            return ProcessResult(message.id, executed_rules=[executed])

        resolved = [
            (selection, self.synthesizer.resolve(message, selection.rule, self.provider, account.about))
            for selection in selections
        ]
        if account.multi_rule_selection_enabled:
            resolved = limit_draft_email_actions(resolved)

        result = ProcessResult(message.id)
        for selection, items in resolved:
            log.info("Applying rule", rule=selection.rule.name, reason=selection.reason)
            result.executed_rules.append(
                self.executor.run(account, message, selection.rule, items, selection.reason)
            )
        return result

    def _select_single(self, account, message: Message,
                       potential: PotentialMatches) -> Tuple[List[RuleSelection], str]:
        if potential.matches:
            rule, reasons = potential.matches[0]
            reason = '; '.join(r.describe() for r in reasons)
            return [RuleSelection(rule, reason)], reason

        choice = self.chooser.choose(message, potential.potential_ai_matches, account.about)
        if choice.rule_index is None:
            return [], choice.reason
        return [RuleSelection(potential.potential_ai_matches[choice.rule_index], choice.reason)], choice.reason

    def _select_multiple(self, account, message: Message,
                         potential: PotentialMatches) -> Tuple[List[RuleSelection], str]:
        selections = [
            RuleSelection(rule, '; '.join(r.describe() for r in reasons)) for rule, reasons in potential.matches
        ]
        reason = 'No rules'
        if potential.potential_ai_matches:
            choice = self.chooser.choose(message, potential.potential_ai_matches, account.about, multi_rule=True)
            reason = choice.reason
            chosen_ids = {s.rule.id for s in selections}
            for index in choice.rule_indices:
                rule = potential.potential_ai_matches[index]
                if rule.id not in chosen_ids:
                    selections.append(RuleSelection(rule, choice.reason))
                    chosen_ids.add(rule.id)
        return selections, reason

    def process_batch(self, account, message_ids: Sequence[str], rerun: bool = False) -> BatchResult:
        """Fetch and process messages; one message failing never affects the others"""
        result = BatchResult()
        rules = self.repo.list_enabled_rules(account.id)
        messages = self.provider.get_messages_batch(list(message_ids))
        for message_id in message_ids:
            message = messages.get(message_id)
            if message is None:
                logger.warning("Could not fetch message, skipping", message_id=message_id)
                result.skipped += 1
                continue
            try:
                outcome = self.process_email(account, message, rerun=rerun, rules=rules)
            except Exception as e:
                self.repo.db.rollback()
                logger.exception("Error processing email", message_id=message_id, error=str(e))
                result.errors += 1
                continue
            if outcome.skipped_reason:
                result.skipped += 1
            else:
                result.processed += 1
        return result

    def approve_executed_rule(self, account, executed_rule_id: int):
        """Run the actions of a rule that was waiting for the user's approval"""
        executed_rule = self._get_awaiting_approval(executed_rule_id)
        message = self.provider.get_message(executed_rule.message_id)
        logger.info("Executed rule approved", executed_rule_id=executed_rule_id)
        return self.executor.execute_executed_rule(account, message, executed_rule)

    def reject_executed_rule(self, executed_rule_id: int):
        executed_rule = self._get_awaiting_approval(executed_rule_id)
        for item in executed_rule.action_items:
            if item.status == ExecutedActionStatus.PENDING:
                self.repo.set_action_status(item, ExecutedActionStatus.SKIPPED, error='Rejected')
        self.repo.set_executed_rule_status(executed_rule, ExecutedRuleStatus.SKIPPED)
        logger.info("Executed rule rejected", executed_rule_id=executed_rule_id)
        return executed_rule

    def _get_awaiting_approval(self, executed_rule_id: int):
        executed_rule = self.repo.get_executed_rule(executed_rule_id)
        if executed_rule is None:
            raise LookupError(f"Executed rule {executed_rule_id} not found")
        if executed_rule.status != ExecutedRuleStatus.PENDING or executed_rule.automated:
            raise ValueError(f"Executed rule {executed_rule_id} is not awaiting approval")
        return executed_rule
