"""Tests for provorch error classes.

Tests cover:
- TransientError and PermanentError hierarchy
- Error kinds
- Conversion of exceptions into ErrorInfo
"""

import pytest

from provorch.errors import (
    Cancelled,
    ConfigError,
    DependencyUnmet,
    ErrorKind,
    InvalidTransition,
    LaunchError,
    PermanentError,
    PipelineConstructionError,
    ProbeTimeout,
    ProbeUnreachable,
    ProvorchError,
    StageActionError,
    TransientError,
)
from provorch.schemas import ErrorInfo, ServiceState


class TestHierarchy:
    """Tests for the error class hierarchy."""

    def test_base_is_exception(self):
        assert issubclass(ProvorchError, Exception)

    @pytest.mark.parametrize("cls", [ProbeTimeout, ProbeUnreachable])
    def test_probe_errors_are_transient(self, cls):
        assert issubclass(cls, TransientError)
        assert issubclass(cls, ProvorchError)

    @pytest.mark.parametrize("cls", [LaunchError, DependencyUnmet, PipelineConstructionError, ConfigError])
    def test_permanent_errors(self, cls):
        assert issubclass(cls, PermanentError)

    def test_transient_can_be_caught_as_base(self):
        with pytest.raises(ProvorchError):
            raise ProbeTimeout("daemon did not answer")

    def test_has_message_and_details(self):
        error = LaunchError("ollama not found", details={"command": ["ollama", "serve"]})
        assert str(error) == "ollama not found"
        assert error.details == {"command": ["ollama", "serve"]}

    def test_details_default_to_empty(self):
        assert StageActionError("boom").details == {}


class TestErrorKinds:
    """Each error carries its taxonomy kind."""

    @pytest.mark.parametrize(
        "cls, kind",
        [
            (LaunchError, ErrorKind.LAUNCH),
            (ProbeTimeout, ErrorKind.PROBE_TIMEOUT),
            (ProbeUnreachable, ErrorKind.PROBE_UNREACHABLE),
            (DependencyUnmet, ErrorKind.DEPENDENCY_UNMET),
            (StageActionError, ErrorKind.STAGE_ACTION),
            (PipelineConstructionError, ErrorKind.PIPELINE_CONSTRUCTION),
            (Cancelled, ErrorKind.CANCELLED),
        ],
    )
    def test_kind(self, cls, kind):
        assert cls.kind == kind

    def test_kind_values_are_snake_case(self):
        assert ErrorKind.PROBE_TIMEOUT.value == "probe_timeout"
        assert ErrorKind.DEPENDENCY_UNMET.value == "dependency_unmet"


class TestInvalidTransition:
    def test_message_names_states(self):
        error = InvalidTransition("proxy", ServiceState.HEALTHY, ServiceState.STARTING)
        assert "proxy" in str(error)
        assert "healthy -> starting" in str(error)
        assert error.current == ServiceState.HEALTHY


class TestErrorInfoFromException:
    def test_keeps_provorch_kind_and_details(self):
        info = ErrorInfo.from_exception(LaunchError("missing", details={"command": ["x"]}))
        assert info.kind == ErrorKind.LAUNCH
        assert info.message == "missing"
        assert info.details["command"] == ["x"]
        assert info.details["type"] == "LaunchError"

    def test_foreign_exception_defaults_to_stage_action(self):
        info = ErrorInfo.from_exception(RuntimeError("disk full"))
        assert info.kind == ErrorKind.STAGE_ACTION
        assert info.details == {"type": "RuntimeError"}

    def test_explicit_kind_wins(self):
        info = ErrorInfo.from_exception(ValueError("bad"), kind=ErrorKind.LAUNCH)
        assert info.kind == ErrorKind.LAUNCH

    def test_empty_message_falls_back_to_type(self):
        info = ErrorInfo.from_exception(KeyError())
        assert info.message == "KeyError"
