import json
import math
import unittest

from interpreter import (
    TYPE_BOOL,
    TYPE_FN,
    TYPE_NUM,
    Interpreter,
    JossArityError,
    JossArrayMissError,
    JossBindingError,
    JossRuntimeError,
    JossUndefinedStepError,
    TracebackFormatter,
    Value,
    format_number,
    format_value,
    to_bool,
    to_number,
    values_equal,
)
from lexer import JossParseError


class InterpreterCase(unittest.TestCase):

    def setUp(self):
        self.output = []
        self.interpreter = Interpreter(output_sink=self.output.append)

    def run_lines(self, *lines):
        self.output.clear()
        for line in lines:
            self.interpreter.evaluate_line(line)
        return "".join(self.output)


class TestValues(unittest.TestCase):

    def test_to_number(self):
        self.assertEqual(to_number(Value(TYPE_NUM, 2.5)), 2.5)
        self.assertEqual(to_number(Value(TYPE_BOOL, True)), 1.0)
        self.assertEqual(to_number(Value(TYPE_BOOL, False)), 0.0)
        self.assertTrue(math.isnan(to_number(Value(TYPE_FN, object()))))

    def test_to_bool(self):
        self.assertTrue(to_bool(Value(TYPE_NUM, -1.0)))
        self.assertFalse(to_bool(Value(TYPE_NUM, 0.0)))
        self.assertFalse(to_bool(Value(TYPE_NUM, math.nan)))
        self.assertTrue(to_bool(Value(TYPE_FN, object())))

    def test_equality_does_not_coerce(self):
        self.assertFalse(values_equal(Value(TYPE_NUM, 1.0), Value(TYPE_BOOL, True)))
        self.assertTrue(values_equal(Value(TYPE_NUM, 1.0), Value(TYPE_NUM, 1.0)))
        target = object()
        self.assertTrue(values_equal(Value(TYPE_FN, target), Value(TYPE_FN, target)))
        self.assertFalse(values_equal(Value(TYPE_FN, target), Value(TYPE_FN, object())))

    def test_format_number(self):
        cases = [
            (9.0, "9"),
            (-4.0, "-4"),
            (0.25, "0.25"),
            (-0.0, "0"),
            (0.1 + 0.2, "0.30000000000000004"),
            (123456789.0, "123456789"),
            (1e21, "1e+21"),
            (1.5e22, "1.5e+22"),
            (1e-7, "1e-7"),
            (0.000001, "0.000001"),
            (math.inf, "Infinity"),
            (-math.inf, "-Infinity"),
            (math.nan, "NaN"),
        ]
        for x, text in cases:
            with self.subTest(x=x):
                self.assertEqual(format_number(x), text)

    def test_format_value(self):
        self.assertEqual(format_value(Value(TYPE_BOOL, True)), "true")
        self.assertEqual(format_value(Value(TYPE_BOOL, False)), "false")


class TestEvaluation(InterpreterCase):

    def test_end_to_end(self):
        self.assertEqual(self.run_lines("Set x = 3.", "Type x*x."), "9\n")

    def test_precedence(self):
        self.assertEqual(self.run_lines("Type 2 + 3 * 4, (2 + 3) * 4."), "14\n20\n")

    def test_conditional_first_match(self):
        self.assertEqual(self.run_lines("Set x = 5.", "Type (x > 10: 1; x > 3: 2; 0)."), "2\n")
        self.assertEqual(self.run_lines("Set x = 1.", "Type (x > 10: 1; x > 3: 2; 0)."), "0\n")

    def test_quoted_text(self):
        self.assertEqual(self.run_lines('Type "Hello", 3.'), "Hello\n3\n")

    def test_comparison_and_booleans(self):
        self.assertEqual(self.run_lines("Type 2 > 1, 2 <= 1, 1 != 2."), "true\nfalse\ntrue\n")

    def test_or_computes_and(self):
        self.assertEqual(self.run_lines("Type 1 = 1 or 1 = 2."), "false\n")
        self.assertEqual(self.run_lines("Type 1 = 1 or 2 = 2."), "true\n")

    def test_ieee_division(self):
        self.assertEqual(self.run_lines("Type 1/0, -1/0, 0/0, 1/4."), "Infinity\n-Infinity\nNaN\n0.25\n")

    def test_boolean_arithmetic(self):
        self.assertEqual(self.run_lines("Type (1 < 2) + 1."), "2\n")

    def test_if_guard(self):
        self.assertEqual(self.run_lines('Type "no" if 1 > 2.', 'Type "yes" if 2 > 1.'), "yes\n")

    def test_repeated_set_is_stable(self):
        self.assertEqual(self.run_lines("Set x = 2.", "Set x = 2.", "Type x.", "Type x."), "2\n2\n")

    def test_undefined_variable(self):
        with self.assertRaises(JossBindingError):
            self.run_lines("Type y.")

    def test_output_before_error_stands(self):
        with self.assertRaises(JossBindingError):
            self.run_lines("Type 1, y.")
        self.assertEqual("".join(self.output), "1\n")

    def test_parse_error_raises_before_output(self):
        with self.assertRaises(JossParseError):
            self.run_lines("Type 1", "Type 2.")
        self.assertEqual(self.output, [])

    def test_evaluate_keeps_going_after_errors(self):
        errors = self.interpreter.evaluate("Type 1\nType 1, y.\nType 2.")
        self.assertEqual([type(error) for error in errors], [JossParseError, JossBindingError])
        self.assertEqual("".join(self.output), "1\n2\n")

    def test_blank_and_comment_lines(self):
        self.assertEqual(self.run_lines("", "* note", "Type 1."), "1\n")


class TestArrays(InterpreterCase):

    def test_dimension_change_clears(self):
        self.assertEqual(self.run_lines("Set a(1) = 5.", "Set a(1, 2) = 6.", "Type a(1, 2)."), "6\n")
        with self.assertRaises(JossArityError):
            self.run_lines("Type a(1).")

    def test_strict_miss(self):
        self.run_lines("Set b(1) = 2.")
        with self.assertRaises(JossArrayMissError) as ctx:
            self.run_lines("Type b(2).")
        self.assertEqual(ctx.exception.message, "Missing array contents: b(2)")

    def test_sparse_arrays(self):
        output = []
        interpreter = Interpreter(output_sink=output.append, sparse_arrays=True)
        interpreter.evaluate("Set b(1) = 2.\nType b(2), b(1).")
        self.assertEqual("".join(output), "0\n2\n")

    def test_indices_are_expressions(self):
        self.assertEqual(self.run_lines("Set i = 2.", "Set a(i + 1) = 7.", "Type a(3)."), "7\n")

    def test_rebinding_kind(self):
        self.run_lines("Set a(1) = 1.", "Set a = 3.")
        self.assertEqual(self.interpreter.environment.kind_of("a"), "scalar")
        self.assertEqual(self.run_lines("Type a."), "3\n")
        self.run_lines("Let a(x) = x + 1.")
        self.assertEqual(self.interpreter.environment.kind_of("a"), "function")
        self.assertEqual(self.run_lines("Type a(1)."), "2\n")


class TestFunctions(InterpreterCase):

    def test_let_and_call(self):
        self.assertEqual(self.run_lines("Let f(x) = x*x.", "Type f(4)."), "16\n")

    def test_arity_error(self):
        self.run_lines("Let f(x) = x*x.")
        with self.assertRaises(JossArityError):
            self.run_lines("Type f(4, 5).")

    def test_globals_visible_and_arguments_shadow(self):
        self.run_lines("Set x = 10.", "Let g(y) = x + y.", "Let h(x) = x * 2.")
        self.assertEqual(self.run_lines("Type g(5), h(3), x."), "15\n6\n10\n")

    def test_function_value_typed(self):
        self.assertEqual(self.run_lines("Let f(x) = x.", "Type f."), "<function f>\n")

    def test_set_copies_function(self):
        self.assertEqual(self.run_lines("Let f(x) = x + 1.", "Set g = f.", "Type g(1)."), "2\n")
        self.assertEqual(self.interpreter.environment.kind_of("g"), "function")

    def test_reduction(self):
        self.assertEqual(self.run_lines("Type sum(i = 1(1)5: i*i)."), "30\n")
        self.assertEqual(self.run_lines("Type prod(i = 1(1)5: i)."), "24\n")
        self.assertEqual(self.run_lines("Type max(i = 3, 9, 2: i)."), "9\n")

    def test_reduction_sees_function_arguments(self):
        self.assertEqual(self.run_lines("Let s(n) = sum(i = 1(1)n: i*n).", "Type s(3)."), "9\n")

    def test_equality_arguments_in_calls(self):
        self.assertEqual(self.run_lines("Set x = 1.", "Type conj(x = 1, x = 1)."), "true\n")
        self.assertEqual(self.run_lines("Let f(a, b) = b.", "Type f(x = 1, 7)."), "7\n")

    def test_reduction_over_empty_range(self):
        self.assertEqual(self.run_lines("Type sum(i = 1(1)1: i), prod(i = 1(1)1: i)."), "0\n1\n")
        self.assertEqual(self.run_lines("Type conj(i = 1(1)1: i), disj(i = 1(1)1: i)."), "true\nfalse\n")
        self.assertEqual(self.run_lines("Type min(i = 1(1)1: i), max(i = 1(1)1: i)."), "Infinity\n-Infinity\n")


class TestBuiltins(InterpreterCase):

    def test_numeric(self):
        out = self.run_lines("Type sqrt(16), sgn(-3), ip(3.7), fp(3.75), ip(-3.7).")
        self.assertEqual(out, "4\n-1\n3\n0.75\n-3\n")

    def test_digit_and_exponent_part(self):
        self.assertEqual(self.run_lines("Type dp(1234.5), xp(1234.5), xp(0.05)."), "1.2345\n3\n-2\n")

    def test_arg(self):
        self.assertEqual(self.run_lines("Type arg(1, 1)."), "0.7853981633974483\n")

    def test_variadic(self):
        self.assertEqual(self.run_lines("Type max(3, 9, 2), min(3, 9, 2), sum(1, 2, 3)."), "9\n2\n6\n")

    def test_logic(self):
        self.assertEqual(self.run_lines("Type conj(1, 0), disj(1, 0), tv(1 = 1), tv(0)."), "false\ntrue\n1\nfalse\n")

    def test_sqrt_of_negative_is_nan(self):
        self.assertEqual(self.run_lines("Type sqrt(-1)."), "NaN\n")

    def test_arity(self):
        with self.assertRaises(JossArityError):
            self.run_lines("Type sqrt(1, 2).")

    def test_bindings_shadow_builtins(self):
        self.assertEqual(self.run_lines("Set sqrt = 3.", "Type sqrt."), "3\n")


class TestDo(InterpreterCase):

    def test_do_step(self):
        self.assertEqual(self.run_lines('1.1 Type "hi".', "Do step 1.1."), "hi\n")

    def test_stored_command_does_not_run(self):
        self.assertEqual(self.run_lines('1.1 Type "hi".'), "")

    def test_part_runs_in_numeric_order(self):
        out = self.run_lines('1.3 Type "c".', '1.1 Type "a".', '1.25 Type "b2".', '1.2 Type "b".', "Do part 1.")
        self.assertEqual(out, "a\nb\nb2\nc\n")

    def test_replacing_a_step_keeps_order(self):
        self.run_lines('1.2 Type "b".', '1.1 Type "a".')
        self.assertEqual(self.run_lines('1.1 Type "A".', "Do part 1."), "A\nb\n")

    def test_equivalent_step_literals(self):
        self.assertEqual(self.run_lines('1.10 Type "x".', "Do step 1.1."), "x\n")

    def test_for_range(self):
        out = self.run_lines("1.1 Type i.", "Do step 1.1 for i = 1,3(2)9,11.")
        self.assertEqual(out, "1\n3\n5\n7\n11\n")

    def test_for_leaves_variable_bound(self):
        self.assertEqual(self.run_lines("1.1 Set t = i.", "Do step 1.1 for i = 1(1)4.", "Type i, t."), "3\n3\n")

    def test_times(self):
        self.run_lines("Set n = 0.", "1.1 Set n = n + 1.")
        self.assertEqual(self.run_lines("Do step 1.1, 3 times.", "Type n."), "3\n")
        self.assertEqual(self.run_lines("Do step 1.1, 2.7 times.", "Type n."), "5\n")
        self.assertEqual(self.run_lines("Do step 1.1, -2 times.", "Type n."), "5\n")

    def test_guarded_stored_step(self):
        self.run_lines("1.1 Type i if i > 2.")
        self.assertEqual(self.run_lines("Do part 1 for i = 1(1)5."), "3\n4\n")

    def test_nested_do(self):
        out = self.run_lines('1.1 Type "outer".', "1.2 Do part 2.", '2.1 Type "inner".', "Do part 1.")
        self.assertEqual(out, "outer\ninner\n")

    def test_undefined_step_and_part(self):
        with self.assertRaises(JossUndefinedStepError):
            self.run_lines("Do step 9.1.")
        with self.assertRaises(JossUndefinedStepError):
            self.run_lines("Do part 9.")

    def test_runaway_recursion_is_reported(self):
        self.run_lines("1.1 Do step 1.1.")
        with self.assertRaises(JossRuntimeError) as ctx:
            self.run_lines("Do step 1.1.")
        self.assertEqual(ctx.exception.rule, "internal")
        # The session is still usable afterwards.
        self.assertEqual(self.run_lines("Type 1."), "1\n")


class TestStateLog(InterpreterCase):

    def test_commands_are_logged(self):
        self.run_lines("Set x = 1.", "1.1 Type x.")
        rules = [entry.rewrite_record["rule"] for entry in self.interpreter.logger.entries]
        self.assertEqual(rules, ["SEED", "Set", "StoredCommand"])
        last = self.interpreter.logger.entries[-1]
        self.assertEqual(last.state_id, "s_000002")
        self.assertEqual(last.rewrite_record["from_state_id"], "s_000001")

    def test_verbose_snapshot(self):
        interpreter = Interpreter(output_sink=lambda text: None, verbose=True)
        interpreter.evaluate("Set x = 1.\nSet x = 2.")
        self.assertEqual(interpreter.logger.entries[-1].env_snapshot, {"x": "scalar:1"})

    def test_io_log(self):
        self.run_lines("Type 7.")
        self.assertEqual(self.interpreter.io_log, [{"event": "TYPE", "text": "7"}, {"event": "TYPE", "text": "\n"}])

    def test_error_carries_step_index(self):
        with self.assertRaises(JossBindingError) as ctx:
            self.run_lines("Type y.")
        self.assertEqual(ctx.exception.step_index, self.interpreter.logger.entries[-1].step_index)


class TestTraceback(InterpreterCase):

    def test_frames_for_do(self):
        self.run_lines("1.1 Type y.")
        with self.assertRaises(JossBindingError) as ctx:
            self.run_lines("Do step 1.1.")
        formatter = TracebackFormatter(self.interpreter)
        text = formatter.format_text(ctx.exception, verbose=False)
        self.assertIn("<top-level> at line 2, column 1", text)
        self.assertIn("step 1.1 at line 1, column 5", text)
        self.assertTrue(text.endswith("JossBindingError: No such variable: y (rule: IDENT)"))
        data = json.loads(formatter.to_json(ctx.exception))
        self.assertEqual(len(data["traceback"]), 2)
        self.assertEqual(data["error"]["type"], "JossBindingError")


if __name__ == "__main__":
    unittest.main()
