import pytest

from hcforge.errors import (
    AuthenticationFailedError,
    RemoteCommandError,
    UnconfirmedExecutionError,
    classify_remote_failure,
    describe_failure,
    looks_like_auth_failure,
    on_message,
    reraise_as,
)

pytestmark = [pytest.mark.unit]


class TestClassification:
    @pytest.mark.parametrize(
        "text",
        [
            "Permission denied (publickey,password).",
            "SSH authentication failed for root",
            "Auth fail",
            "No supported authentication methods available",
        ],
    )
    def test_auth_patterns(self, text):
        assert looks_like_auth_failure(text)

    def test_non_auth_text(self):
        assert not looks_like_auth_failure("Connection timed out")

    def test_on_message_case_sensitivity(self):
        assert on_message("Timeout")("request timeout")
        assert not on_message("Timeout", case_sensitive=True)("request timeout")

    def test_plain_exception_becomes_remote_error(self):
        err = classify_remote_failure(OSError("Connection refused"))
        assert type(err) is RemoteCommandError
        assert str(err) == "Connection refused"

    def test_auth_text_becomes_auth_error(self):
        err = classify_remote_failure(RuntimeError("Permission denied"))
        assert isinstance(err, AuthenticationFailedError)

    def test_stderr_is_checked_for_auth_failures(self):
        err = classify_remote_failure(
            RemoteCommandError("exit 1", exit_status=1, stderr="sudo: Authentication failed")
        )
        assert isinstance(err, AuthenticationFailedError)
        assert err.exit_status == 1

    def test_classified_errors_pass_through(self):
        err = UnconfirmedExecutionError("startup-1")
        assert classify_remote_failure(err) is err


class TestDescribeFailure:
    def test_auth_failure_is_actionable(self):
        message = describe_failure(RuntimeError("Permission denied"), "203.0.113.10")
        assert message == "Authentication was rejected by 203.0.113.10; verify the remote password."

    def test_unconfirmed(self):
        assert "unconfirmed" in describe_failure(UnconfirmedExecutionError("startup-1"))

    def test_non_zero_exit_uses_stderr_tail(self):
        err = RemoteCommandError("exit 2", exit_status=2, stderr="line one\nNo supported package manager\n")
        assert describe_failure(err) == "Remote command exited with status 2: No supported package manager"

    def test_fallback_to_message(self):
        assert describe_failure(OSError("Connection reset")) == "Connection reset"


def test_reraise_as_chains_distinct_cause():
    cause = OSError("boom")
    with pytest.raises(RemoteCommandError) as info:
        reraise_as(RemoteCommandError("wrapped"), cause)
    assert info.value.__cause__ is cause


def test_reraise_as_same_exception_has_no_self_cause():
    err = RemoteCommandError("same")
    with pytest.raises(RemoteCommandError) as info:
        reraise_as(err, err)
    assert info.value.__cause__ is None
