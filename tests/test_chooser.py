import unittest
from types import SimpleNamespace

from support import FakeLLM, make_message

from inbox_rules.ai.chooser import (
    MORE_INFO_FUNCTION,
    NO_RULE_FUNCTION,
    SELECT_RULES_FUNCTION,
    AIRuleChooser,
    rule_function_name,
)
from inbox_rules.ai.llm import FunctionCall, LLMError

RULES = [
    SimpleNamespace(name='Receipts', instructions='Purchase receipts'),
    SimpleNamespace(name='Cold Email', instructions='Unsolicited sales outreach'),
    SimpleNamespace(name='Support', instructions='Customer support questions'),
]


def call(name, **arguments):
    return FunctionCall(name=name, arguments=arguments)


class TestRuleFunctionName(unittest.TestCase):
    def test_slug(self):
        self.assertEqual(rule_function_name(1, 'Cold Email!'), 'rule_1_cold_email')
        self.assertEqual(rule_function_name(0, '***'), 'rule_0')

    def test_length_cap(self):
        self.assertEqual(len(rule_function_name(3, 'x' * 200)), 64)


class TestSingleChoice(unittest.TestCase):
    def setUp(self):
        self.message = make_message(subject='Question about my order')

    def test_no_rules_skips_model(self):
        llm = FakeLLM()
        result = AIRuleChooser(llm).choose(self.message, [])
        self.assertIsNone(result.rule_index)
        self.assertEqual(result.reason, 'No rules')
        self.assertEqual(llm.calls, [])

    def test_offers_rules_and_reserved_functions(self):
        llm = FakeLLM(result=call('rule_2_support', reason='Asks about an order'))
        result = AIRuleChooser(llm).choose(self.message, RULES, about='I run a shop')

        self.assertEqual(result.rule_index, 2)
        self.assertEqual(result.reason, 'Asks about an order')
        names = [f.name for f in llm.calls[0]['functions']]
        self.assertEqual(names, ['rule_0_receipts', 'rule_1_cold_email', 'rule_2_support',
                                 NO_RULE_FUNCTION, MORE_INFO_FUNCTION])
        self.assertIn('I run a shop', llm.calls[0]['system'])
        self.assertIn('Question about my order', llm.calls[0]['prompt'])

    def test_no_rule_applies(self):
        result = AIRuleChooser(FakeLLM(result=call(NO_RULE_FUNCTION, reason='Personal'))).choose(
            self.message, RULES)
        self.assertIsNone(result.rule_index)
        self.assertEqual(result.reason, 'Personal')

    def test_requires_more_info(self):
        result = AIRuleChooser(FakeLLM(result=call(MORE_INFO_FUNCTION, reason=''))).choose(self.message, RULES)
        self.assertIsNone(result.rule_index)
        self.assertTrue(result.requires_more_info)

    def test_unknown_function_selects_nothing(self):
        result = AIRuleChooser(FakeLLM(result=call('rule_9_made_up', reason='?'))).choose(self.message, RULES)
        self.assertIsNone(result.rule_index)
        self.assertIn('Unknown function', result.reason)

    def test_unparseable_response(self):
        result = AIRuleChooser(FakeLLM(result=None)).choose(self.message, RULES)
        self.assertIsNone(result.rule_index)
        self.assertEqual(result.reason, 'AI response could not be parsed')

    def test_model_error(self):
        result = AIRuleChooser(FakeLLM(error=LLMError('timeout'))).choose(self.message, RULES)
        self.assertIsNone(result.rule_index)
        self.assertEqual(result.reason, 'AI error: timeout')


class TestMultiChoice(unittest.TestCase):
    def setUp(self):
        self.message = make_message()

    def choose(self, arguments, name=SELECT_RULES_FUNCTION):
        llm = FakeLLM(result=FunctionCall(name=name, arguments=arguments))
        return AIRuleChooser(llm).choose(self.message, RULES, multi_rule=True), llm

    def test_keeps_model_order(self):
        result, llm = self.choose({'rule_indices': [2, 0], 'reason': 'Both'})
        self.assertEqual(result.rule_indices, [2, 0])
        self.assertEqual([f.name for f in llm.calls[0]['functions']], [SELECT_RULES_FUNCTION])
        self.assertIn('Cold Email', llm.calls[0]['prompt'])

    def test_duplicates_removed(self):
        result, _ = self.choose({'rule_indices': [1, 1, 0], 'reason': ''})
        self.assertEqual(result.rule_indices, [1, 0])

    def test_empty_selection(self):
        result, _ = self.choose({'rule_indices': [], 'reason': ''})
        self.assertEqual(result.rule_indices, [])
        self.assertEqual(result.reason, 'No rule applies')

    def test_out_of_range_index_rejects_selection(self):
        result, _ = self.choose({'rule_indices': [0, 3], 'reason': ''})
        self.assertEqual(result.rule_indices, [])
        self.assertEqual(result.reason, 'Invalid rule index')

    def test_bool_and_string_indices_rejected(self):
        for indices in ([True], ['1'], [1.0]):
            result, _ = self.choose({'rule_indices': indices, 'reason': ''})
            self.assertEqual(result.rule_indices, [], indices)

    def test_wrong_function(self):
        result, _ = self.choose({'reason': 'x'}, name=NO_RULE_FUNCTION)
        self.assertEqual(result.reason, 'Malformed rule selection')


if __name__ == '__main__':
    unittest.main()
