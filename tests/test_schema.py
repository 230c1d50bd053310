import unittest

import support  # noqa: F401

from inbox_rules.rules.schema import NINETY_DAYS_MINUTES, RuleAction, RuleValidationError, parse_rules_config


def config(rules=None, **extra):
    data = {
        'account': {'email': 'me@example.com'},
        'rules': rules if rules is not None else [{
            'identifier': 'r1',
            'name': 'Newsletters',
            'instructions': 'Newsletters and digests',
            'actions': [{'type': 'ARCHIVE'}],
        }],
    }
    data.update(extra)
    return data


def rule(**overrides):
    data = {'identifier': 'r1', 'name': 'R', 'instructions': 'x', 'actions': [{'type': 'ARCHIVE'}]}
    data.update(overrides)
    return data


class TestRuleSchema(unittest.TestCase):
    def test_valid_config(self):
        parsed = parse_rules_config(config())
        self.assertEqual(parsed.rules[0].type, 'AI')
        self.assertTrue(parsed.rules[0].automate)
        self.assertEqual(parsed.account.provider, 'google')

    def test_delay_bounds(self):
        for delay in (0, -5, NINETY_DAYS_MINUTES + 1):
            with self.assertRaises(RuleValidationError):
                parse_rules_config(config([rule(actions=[{'type': 'ARCHIVE', 'delay_in_minutes': delay}])]))
        parsed = parse_rules_config(config([rule(actions=[{'type': 'ARCHIVE', 'delay_in_minutes': NINETY_DAYS_MINUTES}])]))
        self.assertEqual(parsed.rules[0].actions[0].delay_in_minutes, NINETY_DAYS_MINUTES)

    def test_ai_rule_requires_instructions(self):
        with self.assertRaises(RuleValidationError):
            parse_rules_config(config([rule(instructions='  ')]))

    def test_static_rule_requires_a_condition(self):
        with self.assertRaises(RuleValidationError):
            parse_rules_config(config([rule(type='STATIC', instructions=None)]))
        parsed = parse_rules_config(config([rule(type='STATIC', instructions=None, conditions={'from': '@a.com'})]))
        self.assertEqual(parsed.rules[0].conditions.from_, '@a.com')

    def test_required_action_fields(self):
        for action in ({'type': 'LABEL'}, {'type': 'FORWARD'}, {'type': 'CALL_WEBHOOK'}):
            with self.assertRaises(RuleValidationError):
                parse_rules_config(config([rule(actions=[action])]))

    def test_unknown_action_type_rejected(self):
        with self.assertRaises(RuleValidationError):
            parse_rules_config(config([rule(actions=[{'type': 'DELETE_EVERYTHING'}])]))

    def test_rule_needs_an_action(self):
        with self.assertRaises(RuleValidationError):
            parse_rules_config(config([rule(actions=[])]))

    def test_duplicate_identifiers(self):
        with self.assertRaises(RuleValidationError):
            parse_rules_config(config([rule(), rule(name='Other')]))

    def test_unknown_references(self):
        with self.assertRaises(RuleValidationError):
            parse_rules_config(config([rule(category_filter_type='EXCLUDE', category_filters=['Missing'])]))
        with self.assertRaises(RuleValidationError):
            parse_rules_config(config([rule(type='GROUP', instructions=None, group='Missing')]))

    def test_ai_field_becomes_template(self):
        action = RuleAction(type='LABEL', label={'ai': True, 'value': 'a short topic'})
        values = action.column_values()
        self.assertEqual(values['label'], '{{a short topic}}')
        self.assertEqual(values['templated_fields'], ['label'])

    def test_inline_templates_are_tagged(self):
        values = RuleAction(type='DRAFT_EMAIL', content='Hi {{name}}', subject='Thanks').column_values()
        self.assertEqual(values['templated_fields'], ['content'])


if __name__ == '__main__':
    unittest.main()
