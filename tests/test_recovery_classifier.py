"""Tests for appforge/recovery/classifier.py: build-log classification."""

import logging

import pytest

from appforge.core.models import BuildErrorType, Severity
from appforge.recovery.classifier import EMPTY_OUTPUT_MESSAGE, ErrorClassifier


@pytest.fixture
def classifier() -> ErrorClassifier:
    return ErrorClassifier()


class TestCategories:
    def test_symbol_not_found(self, classifier):
        err = classifier.classify("error: cannot find symbol\nsymbol: foo")
        assert err.type == BuildErrorType.SYMBOL_NOT_FOUND
        assert err.severity == Severity.HIGH
        assert err.recoverable
        assert err.message == "Symbol 'foo' not found"

    def test_symbol_with_kind_prefix(self, classifier):
        log = (
            "MainActivity.java:12: error: cannot find symbol\n"
            "    TodoAdapter adapter;\n"
            "  symbol:   class TodoAdapter\n"
            "  location: class MainActivity"
        )
        err = classifier.classify(log)
        assert err.type == BuildErrorType.SYMBOL_NOT_FOUND
        assert err.message == "Symbol 'TodoAdapter' not found"

    def test_not_found_variant(self, classifier):
        err = classifier.classify("Class 'com.example.Widget' not found")
        assert err.type == BuildErrorType.SYMBOL_NOT_FOUND
        assert "com.example.Widget" in err.message

    def test_unresolved_reference(self, classifier):
        err = classifier.classify("e: MainActivity.kt: (14, 5): Unresolved reference: viewBinding")
        assert err.type == BuildErrorType.UNRESOLVED_REFERENCE
        assert err.severity == Severity.HIGH
        assert err.message == "Unresolved reference: viewBinding"

    def test_duplicate_definition(self, classifier):
        err = classifier.classify("Duplicate class com.example.Util found in modules a and b")
        assert err.type == BuildErrorType.DUPLICATE_DEFINITION
        assert err.severity == Severity.CRITICAL
        assert err.message == "Duplicate definition: com.example.Util"

    def test_already_defined(self, classifier):
        err = classifier.classify("error: method onCreate is already defined in class MainActivity")
        assert err.type == BuildErrorType.DUPLICATE_DEFINITION

    def test_syntax_error_with_line(self, classifier):
        err = classifier.classify("Main.java:42: error: syntax error, insert ';' to complete statement")
        assert err.type == BuildErrorType.SYNTAX_ERROR
        assert err.severity == Severity.CRITICAL
        assert err.message == "Syntax error at line 42"
        assert "insert ';'" in err.details

    def test_unexpected_token(self, classifier):
        err = classifier.classify("Unexpected token '}'")
        assert err.type == BuildErrorType.SYNTAX_ERROR
        assert err.message == "Syntax error"

    def test_manifest_permission(self, classifier):
        err = classifier.classify("Manifest merger failed: uses-permission CAMERA missing")
        assert err.type == BuildErrorType.MANIFEST_ERROR
        assert err.severity == Severity.MEDIUM
        assert err.recoverable
        assert err.message == "Manifest permission error"

    def test_manifest_other(self, classifier):
        err = classifier.classify("AndroidManifest.xml: invalid activity declaration")
        assert err.type == BuildErrorType.MANIFEST_ERROR
        assert err.message == "Manifest error"

    def test_resource_error(self, classifier):
        err = classifier.classify("error: resource layout/activity_todo (aka app:layout/activity_todo) missing")
        assert err.type == BuildErrorType.RESOURCE_ERROR
        assert err.severity == Severity.MEDIUM

    def test_dependency_error(self, classifier):
        err = classifier.classify("Could not resolve all files for configuration: Version conflict detected")
        assert err.type == BuildErrorType.DEPENDENCY_ERROR
        assert err.severity == Severity.HIGH
        assert err.message == "Dependency resolution error"


class TestPriorityOrder:
    def test_symbol_beats_dependency(self, classifier):
        err = classifier.classify("dependency com.lib:core failed; class Foo not found")
        assert err.type == BuildErrorType.SYMBOL_NOT_FOUND

    def test_duplicate_beats_resource(self, classifier):
        err = classifier.classify("duplicate resource: @string/app_name")
        assert err.type == BuildErrorType.DUPLICATE_DEFINITION

    def test_syntax_beats_manifest(self, classifier):
        err = classifier.classify("AndroidManifest.xml:3: error: syntax error near <application")
        assert err.type == BuildErrorType.SYNTAX_ERROR

    def test_case_insensitive(self, classifier):
        err = classifier.classify("UNRESOLVED REFERENCE: Compose")
        assert err.type == BuildErrorType.UNRESOLVED_REFERENCE


class TestAtSignRule:
    def test_at_sign_alone_classifies_as_resource(self, classifier, caplog):
        with caplog.at_level(logging.DEBUG, logger="appforge.recovery.classifier"):
            err = classifier.classify("Build failed, contact build-team@example.com")
        assert err.type == BuildErrorType.RESOURCE_ERROR
        assert "verdict may be spurious" in caplog.text


class TestFallbacks:
    def test_empty_input(self, classifier):
        for empty in ("", None):
            err = classifier.classify(empty)
            assert err.type == BuildErrorType.UNKNOWN
            assert err.message == EMPTY_OUTPUT_MESSAGE
            assert err.severity == Severity.MEDIUM
            assert not err.recoverable

    def test_unknown_truncates_to_200_chars(self, classifier):
        log = "Gradle daemon crashed unexpectedly " + "x" * 400
        err = classifier.classify(log)
        assert err.type == BuildErrorType.UNKNOWN
        assert not err.recoverable
        assert err.message == log[:200]
        assert len(err.message) == 200

    def test_excerpt_kept(self, classifier):
        log = "Unresolved reference: foo\n" + "y" * 500
        assert classifier.classify(log).excerpt == log[:200]


class TestPurity:
    def test_identical_input_identical_output(self, classifier):
        log = "error: cannot find symbol\nsymbol: foo"
        assert classifier.classify(log) == classifier.classify(log)

    def test_separate_instances_agree(self):
        log = "duplicate class a.B"
        assert ErrorClassifier().classify(log) == ErrorClassifier().classify(log)
