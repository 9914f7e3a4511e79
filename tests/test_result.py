from app.services.result import Result
from app.services.zapi_service import GatewayRelayError


class TestResultSuccess:
    def test_success_creates_ok_result(self):
        result = Result.success("test value")
        assert result.ok is True
        assert result.value == "test value"
        assert result.error is None

    def test_success_with_different_types(self):
        int_result = Result.success(42)
        assert int_result.value == 42

        dict_result = Result.success({"key": "value"})
        assert dict_result.value == {"key": "value"}


class TestResultFailure:
    def test_failure_creates_not_ok_result(self):
        result = Result.failure("Something went wrong", "test_error")
        assert result.ok is False
        assert result.error == "Something went wrong"
        assert result.error_code == "test_error"
        assert result.value is None

    def test_failure_default_code(self):
        result = Result.failure("Error message")
        assert result.error_code == "unknown"


class TestResultUnwrapOr:
    def test_unwrap_or_returns_value_on_success(self):
        result = Result.success("actual value")
        assert result.unwrap_or("default") == "actual value"

    def test_unwrap_or_returns_default_on_failure(self):
        result = Result.failure("Error", "code")
        assert result.unwrap_or("default") == "default"

    def test_unwrap_or_with_none_value(self):
        result = Result.success(None)
        assert result.unwrap_or("default") is None


class TestErrorCodes:
    def test_auto_reply_failure_codes(self):
        for code in ("config_missing", "completion_error", "store_error", "relay_failed", "auto_reply_error"):
            result = Result.failure("Auto-reply failed", code)
            assert result.ok is False
            assert result.error_code == code


class TestResultFromException:
    def test_prefers_message_attribute(self):
        result = Result.from_exception(GatewayRelayError("Z-API error: 500"), "relay_failed")
        assert result.ok is False
        assert result.error == "Z-API error: 500"
        assert result.error_code == "relay_failed"

    def test_falls_back_to_str(self):
        result = Result.from_exception(ValueError("bad value"), "invalid")
        assert result.error == "bad value"
