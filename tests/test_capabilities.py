"""Tests for the capability registry and the built-in capabilities."""

from unittest.mock import Mock

import pytest
import requests

from automation_engine.core.capabilities import CapabilityKind, CapabilityRegistry
from automation_engine.core.exceptions import CapabilityError, TransientError
from automation_engine.models.core import RunOutcome
from automation_engine.tools import EchoAiCapability, HttpRequestCapability, LogMessageCapability

from conftest import chain, node


def make_response(status_code, body=None, content_type="application/json"):
    response = Mock()
    response.status_code = status_code
    response.headers = {"Content-Type": content_type}
    response.text = "" if body is None else str(body)
    response.json.return_value = body
    return response


def make_session(*responses):
    session = Mock(spec=requests.Session)
    session.request.side_effect = list(responses)
    return session


class TestCapabilityRegistry:
    """Registration and invocation."""

    def test_register_and_invoke_function(self):
        registry = CapabilityRegistry()
        registry.register("crm", lambda config, context: {"updated": config["field"], "lead": context["lead"]})

        result = registry.invoke("crm", {"field": "stage"}, {"lead": "lead-1"})

        assert result == {"updated": "stage", "lead": "lead-1"}
        assert registry.exists("crm")
        assert "crm" in registry.list()

    def test_duplicate_registration_is_rejected(self):
        registry = CapabilityRegistry()
        registry.register(CapabilityKind.SEND_MESSAGE, LogMessageCapability())

        with pytest.raises(CapabilityError):
            registry.register(CapabilityKind.SEND_MESSAGE, LogMessageCapability())

        registry.register(CapabilityKind.SEND_MESSAGE, LogMessageCapability(), replace=True)

    def test_handler_must_take_config_and_context(self):
        registry = CapabilityRegistry()

        with pytest.raises(CapabilityError):
            registry.register("bad", lambda config: None)
        with pytest.raises(CapabilityError):
            registry.register("worse", "not callable")

    def test_unregister(self):
        registry = CapabilityRegistry()
        registry.register("ai_agent", EchoAiCapability())

        assert registry.unregister("ai_agent")
        assert not registry.unregister("ai_agent")
        with pytest.raises(CapabilityError):
            registry.invoke("ai_agent", {}, {})

    def test_handler_errors_are_wrapped(self):
        registry = CapabilityRegistry()

        def broken(config, context):
            raise KeyError("token")

        registry.register("billing", broken)

        with pytest.raises(CapabilityError) as exc_info:
            registry.invoke("billing", {}, {}, node_id="n7")

        assert "Capability 'billing' failed" in exc_info.value.message
        assert exc_info.value.details["exception_type"] == "KeyError"

    def test_handler_gets_a_copy_of_the_context(self):
        registry = CapabilityRegistry()
        seen = {}

        def mutate(config, context):
            context["lead"] = "changed"
            seen.update(context)

        registry.register("crm", mutate)
        original = {"lead": "lead-1"}
        registry.invoke("crm", {}, original)

        assert original == {"lead": "lead-1"}
        assert seen["lead"] == "changed"


class TestSimulatedCapabilities:
    """Stand-ins used in development."""

    def test_log_message_records_sends(self):
        capability = LogMessageCapability()

        result = capability.invoke({"message": "Hola"}, {"conversation": {"id": "conv-9"}})

        assert result == {"status": "logged", "message_id": "log-1"}
        assert capability.sent == [{"kind": "send_message", "conversation_id": "conv-9", "message": "Hola"}]

    def test_echo_ai(self):
        assert EchoAiCapability().invoke({"user_prompt": "resume"}, {}) == "[AI Processed] resume"


class TestHttpRequestCapability:
    """HTTP calls through a mocked session."""

    def test_json_body_is_decoded(self):
        session = make_session(make_response(200, {"ok": True}))
        capability = HttpRequestCapability(session=session)

        result = capability.invoke(
            {"method": "post", "url": "https://api.example.com/leads", "body": {"name": "Ana"}}, {}
        )

        assert result["status"] == 200
        assert result["body"] == {"ok": True}
        method, url = session.request.call_args.args
        assert (method, url) == ("POST", "https://api.example.com/leads")
        assert session.request.call_args.kwargs["json"] == {"name": "Ana"}

    def test_text_body_is_returned_as_text(self):
        session = make_session(make_response(200, "pong", content_type="text/plain"))

        result = HttpRequestCapability(session=session).invoke({"url": "https://example.com/ping"}, {})

        assert result["body"] == "pong"

    def test_server_errors_are_retried(self):
        session = make_session(make_response(503), make_response(200, {"ok": True}))
        capability = HttpRequestCapability(session=session)

        result = capability.invoke({"url": "https://example.com", "retries": 2, "retry_delay": 0}, {})

        assert result["status"] == 200
        assert session.request.call_count == 2

    def test_retries_exhausted(self):
        session = make_session(make_response(500), make_response(500))
        capability = HttpRequestCapability(session=session)

        with pytest.raises(TransientError):
            capability.invoke({"url": "https://example.com", "retries": 1, "retry_delay": 0}, {})

        assert session.request.call_count == 2

    def test_client_errors_fail_immediately(self):
        session = make_session(make_response(404, "missing", content_type="text/plain"))
        capability = HttpRequestCapability(session=session)

        with pytest.raises(CapabilityError) as exc_info:
            capability.invoke({"url": "https://example.com", "retries": 3, "retry_delay": 0}, {})

        assert exc_info.value.details["status"] == 404
        assert session.request.call_count == 1

    def test_connection_errors_are_transient(self):
        session = Mock(spec=requests.Session)
        session.request.side_effect = requests.ConnectionError("refused")

        with pytest.raises(TransientError):
            HttpRequestCapability(session=session).invoke({"url": "https://example.com"}, {})

    @pytest.mark.parametrize("config", [
        {"url": "ftp://example.com"},
        {"url": ""},
        {"url": "https://example.com", "method": "TRACE"},
    ])
    def test_invalid_requests(self, config):
        session = make_session()

        with pytest.raises(CapabilityError):
            HttpRequestCapability(session=session).invoke(config, {})

        session.request.assert_not_called()

    def test_http_node_stores_response(self, engine, store, capabilities, create_workflow):
        session = make_session(make_response(200, {"plan": "pro"}))
        capabilities.register(CapabilityKind.HTTP, HttpRequestCapability(session=session))
        workflow = create_workflow(
            [node("t", "trigger"),
             node("call", "http", url="https://crm.example.com/leads/{{lead.id}}", outputVariable="crm"),
             node("a", "action", message="Plan {{crm.body.plan}}")],
            chain("t", "call", "a"),
        )

        result = engine.start(workflow.id, {"lead": {"id": "42"}})

        assert result.outcome == RunOutcome.COMPLETED
        assert session.request.call_args.args[1] == "https://crm.example.com/leads/42"
        context = store.load_execution(result.execution_id).context
        assert context["crm"]["body"] == {"plan": "pro"}
        assert context["http_last_status"] == 200

    def test_http_node_failure_fails_the_run(self, engine, capabilities, create_workflow):
        session = make_session(make_response(500))
        capabilities.register(CapabilityKind.HTTP, HttpRequestCapability(session=session))
        workflow = create_workflow(
            [node("t", "trigger"), node("call", "http", url="https://example.com")],
            chain("t", "call"),
        )

        result = engine.start(workflow.id, {})

        assert result.outcome == RunOutcome.FAILED
        assert "returned 500" in result.error_message
