"""
Grader module for running test cases and scoring student submissions.

Provides the Grader class which runs a submission against every test case of
a question through a CodeExecutor and aggregates the verdicts into a score.
"""

import time
from typing import List

from .errors import ExecutionError
from .models import Question, ExamConfig, EvaluationResult, TestResult, round_half_up
from .sandbox import CodeExecutor


class Grader:
    """Handles test case execution and output validation."""

    def __init__(self, config: ExamConfig, executor: CodeExecutor):
        self.config = config
        self.executor = executor

    # ===== CHECKER =====

    @staticmethod
    def _exact_match(student_output: str, expected_output: str) -> bool:
        """
        Exact, case-sensitive string equality after stripping both ends.

        Internal whitespace is compared as-is.
        """
        return student_output.strip() == expected_output.strip()

    # ===== TEST EXECUTION =====

    def evaluate(self, question: Question, code: str) -> EvaluationResult:
        """
        Run all test cases (visible and hidden) for a question.

        Args:
            question: Question holding the test cases
            code: The student's source code

        Returns:
            EvaluationResult with per-test results and a 0-100 score
        """
        total_tests = len(question.test_cases)

        if not code.strip():
            return EvaluationResult(
                question_id=question.id,
                code=code,
                test_results=[],
                score=0,
                total_tests=total_tests,
                passed_tests=0,
            )

        start_time = time.monotonic()
        timeout_sec = self.config.test_time_limit_ms / 1000.0
        results: List[TestResult] = []
        infra_errors: List[str] = []

        for test_case in question.test_cases:
            expected = test_case.expected_output.strip()

            try:
                outcome = self.executor.run(code, test_case.input, timeout_sec)
            except ExecutionError as e:
                infra_errors.append(e.message)
                results.append(TestResult(
                    test_case_id=test_case.id,
                    passed=False,
                    actual_output="",
                    expected_output=expected,
                    execution_time_ms=0,
                    error=e.message,
                    hidden=test_case.hidden,
                ))
                continue

            if outcome.status == "success":
                passed = self._exact_match(outcome.stdout, test_case.expected_output)
                error = None
            else:
                passed = False
                error = self._describe_failure(outcome.status, outcome.stderr)

            results.append(TestResult(
                test_case_id=test_case.id,
                passed=passed,
                actual_output=outcome.stdout.strip(),
                expected_output=expected,
                execution_time_ms=outcome.duration_ms,
                error=error,
                hidden=test_case.hidden,
            ))

        passed_tests = sum(1 for r in results if r.passed)
        score = round_half_up(passed_tests / total_tests * 100) if total_tests > 0 else 0

        return EvaluationResult(
            question_id=question.id,
            code=code,
            test_results=results,
            score=score,
            total_tests=total_tests,
            passed_tests=passed_tests,
            execution_time_ms=int((time.monotonic() - start_time) * 1000),
            has_error=bool(infra_errors),
            error_message=infra_errors[0] if infra_errors else None,
        )

    @staticmethod
    def _describe_failure(status: str, stderr: str) -> str:
        if status == "timeout":
            return "Time limit exceeded"
        if status == "memory_error":
            return "Memory limit exceeded"
        # Last line of a traceback names the exception, e.g. "ValueError: ..."
        lines = [line for line in stderr.strip().splitlines() if line.strip()]
        return lines[-1] if lines else "Runtime error"

    # ===== UTILITY METHODS =====

    def format_results(self, result: EvaluationResult, show_hidden: bool = False) -> str:
        """
        Format an evaluation for display to a student.

        Hidden test inputs and outputs are masked unless show_hidden is set,
        and only the exception line of a failure is shown, never the traceback.
        """
        lines = [f"Running {result.total_tests} test cases..."]

        if not result.test_results and result.total_tests:
            lines.append("  No code submitted.")

        for i, test in enumerate(result.test_results, start=1):
            label = f"  Test {i}{' (hidden)' if test.hidden else ''}"
            if test.passed:
                lines.append(f"{label}: PASSED ({test.execution_time_ms} ms)")
                continue

            lines.append(f"{label}: FAILED")
            if test.hidden and not show_hidden:
                continue
            if test.error:
                lines.append(f"    Error: {test.error[:200]}")
            else:
                lines.append(f"    Your output: {test.actual_output[:100]!r}")
                lines.append(f"    Expected:    {test.expected_output[:100]!r}")

        lines.append("")
        lines.append(f"Result: {result.passed_tests}/{result.total_tests} passed, score {result.score}/100")
        return "\n".join(lines)
