"""
Sync a rules file into the database
"""
import json
from typing import Dict

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..database.models import Action, Category, EmailAccount, Group, GroupItem, Rule, Sender
from .schema import RulesConfig, parse_rules_config

logger = structlog.get_logger(__name__)


def load_rules_file(path: str) -> RulesConfig:
    """Read and validate a rules file"""
    with open(path, 'r', encoding='utf-8') as f:
        return parse_rules_config(json.load(f))


def _sync_account(db: Session, config: RulesConfig) -> EmailAccount:
    data = config.account
    account = db.execute(select(EmailAccount).where(EmailAccount.email == data.email)).scalar_one_or_none()
    if account is None:
        account = EmailAccount(email=data.email)
        db.add(account)
    account.provider = data.provider
    account.about = data.about
    account.multi_rule_selection_enabled = data.multi_rule_selection_enabled
    account.webhook_url = data.webhook_url
    account.webhook_secret = data.webhook_secret
    db.flush()
    return account


def _sync_categories(db: Session, account: EmailAccount, config: RulesConfig) -> Dict[str, Category]:
    existing = {
        c.name: c for c in db.execute(select(Category).where(Category.email_account_id == account.id)).scalars()
    }
    for data in config.categories:
        category = existing.get(data.name)
        if category is None:
            category = Category(email_account_id=account.id, name=data.name)
            db.add(category)
            existing[data.name] = category
        category.description = data.description
    db.flush()

    senders = {
        s.email: s for s in db.execute(select(Sender).where(Sender.email_account_id == account.id)).scalars()
    }
    for data in config.senders:
        sender = senders.get(data.email)
        if sender is None:
            sender = Sender(email_account_id=account.id, email=data.email)
            db.add(sender)
            senders[data.email] = sender
        sender.category_id = existing[data.category].id
    db.flush()
    return existing


def _sync_groups(db: Session, account: EmailAccount, config: RulesConfig) -> Dict[str, Group]:
    existing = {g.name: g for g in db.execute(select(Group).where(Group.email_account_id == account.id)).scalars()}
    for data in config.groups:
        group = existing.get(data.name)
        if group is None:
            group = Group(email_account_id=account.id, name=data.name)
            db.add(group)
            existing[data.name] = group
        group.items = [GroupItem(type=item.type, value=item.value, exclude=item.exclude) for item in data.items]
    db.flush()
    return existing


def _sync_actions(rule: Rule, action_configs) -> None:
    """Update actions in place so label ids healed at runtime survive a reload"""
    current = list(rule.actions)
    for index, action_config in enumerate(action_configs):
        values = action_config.column_values()
        if index < len(current):
            action = current[index]
            if values['label_id'] is None and action.type == values['type'] and action.label == values['label']:
                values['label_id'] = action.label_id
            for name, value in values.items():
                setattr(action, name, value)
        else:
            rule.actions.append(Action(**values))
    for action in current[len(action_configs):]:
        rule.actions.remove(action)


def sync_rules(db: Session, config: RulesConfig) -> EmailAccount:
    """
    Upsert the account, categories, groups and rules from a config.
    Rules missing from the config are disabled, not deleted, since executed
    rules may still reference them.
    """
    account = _sync_account(db, config)
    categories = _sync_categories(db, account, config)
    groups = _sync_groups(db, account, config)

    existing = {r.identifier: r for r in db.execute(select(Rule).where(Rule.email_account_id == account.id)).scalars()}
    seen = set()
    for position, rule_config in enumerate(config.rules):
        rule = existing.get(rule_config.identifier)
        if rule is None:
            rule = Rule(email_account_id=account.id, identifier=rule_config.identifier)
            db.add(rule)
        seen.add(rule_config.identifier)

        rule.name = rule_config.name
        rule.type = rule_config.type
        rule.position = position
        rule.instructions = rule_config.instructions
        rule.from_pattern = rule_config.conditions.from_
        rule.to_pattern = rule_config.conditions.to
        rule.subject_pattern = rule_config.conditions.subject
        rule.body_pattern = rule_config.conditions.body
        rule.conditional_operator = rule_config.conditional_operator
        rule.group_id = groups[rule_config.group].id if rule_config.group else None
        rule.category_filter_type = rule_config.category_filter_type
        rule.category_filters = [categories[name] for name in rule_config.category_filters]
        rule.automate = rule_config.automate
        rule.run_on_threads = rule_config.run_on_threads
        rule.enabled = rule_config.enabled
        _sync_actions(rule, rule_config.actions)

    for identifier, rule in existing.items():
        if identifier not in seen and rule.enabled:
            rule.enabled = False
            logger.info("Disabled rule missing from config", identifier=identifier)

    db.commit()
    logger.info("Rules synced to database", account=account.email, count=len(config.rules))
    return account
