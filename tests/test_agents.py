"""
Tests for role agents, the agent factory and the RoleWorker.
"""

from pathlib import Path
from types import SimpleNamespace
from unittest.mock import Mock

import pytest

from personaflow.agents.echo_agent import EchoAgent
from personaflow.agents.factory import create_agent, load_agents_file
from personaflow.agents.persona_agent import PersonaAgent, parse_reply
from personaflow.agents.worker import RoleWorker, error_code_for
from personaflow.exceptions import AgentNotFoundError
from personaflow.personas.models import Persona
from personaflow.personas.registry import PersonaRegistry

ECHO_AGENTS_FILE = str(Path(__file__).parent.parent / "config" / "agents" / "echo_agent.yaml")


def role_context(role, stage="design", **extra):
    return {"role": role, "stage": stage, "task": {"title": "Checkout"}, **extra}


# =============================================================================
# EchoAgent
# =============================================================================

class TestEchoAgent:
    """Tests for the deterministic agent."""

    def test_summary(self):
        output = EchoAgent().execute("design", {}, role_context("architect"))
        assert output["summary"] == "architect completed 'design' for Checkout"

    def test_scripted_output_per_stage(self):
        agent = EchoAgent(config={"scripts": {
            "architect": {"design": {"recommendations": [{"topic": "db", "choice": "postgres"}]}},
        }})
        designed = agent.execute("design", {}, role_context("architect"))
        built = agent.execute("build", {}, role_context("architect", stage="build"))
        assert designed["recommendations"][0]["choice"] == "postgres"
        assert "recommendations" not in built

    def test_wildcard_script(self):
        agent = EchoAgent(config={"scripts": {"qa": {"*": {"notes": {"checked": True}}}}})
        assert agent.execute("review", {}, role_context("qa", stage="review"))["notes"] == {"checked": True}

    def test_inbox_is_echoed_as_note(self):
        context = role_context("frontend", inbox=[{"sender": "architect", "content": "use REST"}])
        output = EchoAgent().execute("build", {}, context)
        assert output["notes"] == {"frontend.inbox": ["use REST"]}

    def test_scripted_failures(self):
        """A role@stage failure budget fails the first attempts only."""
        agent = EchoAgent(config={"failures": {"backend@build": 2}})
        context = role_context("backend", stage="build")
        for _ in range(2):
            with pytest.raises(RuntimeError):
                agent.execute("build", {}, context)
        assert agent.execute("build", {}, context)["summary"]
        assert len(agent.calls) == 3

    def test_config_file_is_unwrapped(self, tmp_path):
        path = tmp_path / "echo.yaml"
        path.write_text("echo_agent:\n  name: rehearsal\n  delay_seconds: 0\n")
        assert EchoAgent(config_path=str(path)).name == "rehearsal"


# =============================================================================
# PersonaAgent
# =============================================================================

class TestParseReply:
    """Tests for extracting role outputs from LLM replies."""

    def test_plain_text(self):
        assert parse_reply("  Looks good.  ") == {"summary": "Looks good."}

    def test_yaml_block(self):
        reply = (
            "I reviewed the design.\n\n"
            "```yaml\nrecommendations:\n  - {topic: auth, choice: oauth2}\n```\n"
        )
        output = parse_reply(reply)
        assert output["summary"] == "I reviewed the design."
        assert output["recommendations"][0]["choice"] == "oauth2"

    def test_last_valid_block_wins(self):
        reply = (
            '```json\n{"summary": "first"}\n```\n'
            "```yaml\nsummary: [broken\n```\n"
        )
        assert parse_reply(reply)["summary"] == "first"


@pytest.fixture
def persona():
    return Persona(
        name="security-auditor",
        prompt="# Security Auditor\nYou audit.",
        expertise=["security"],
    )


class TestPersonaAgent:
    """Tests for the LLM-backed agent with a fake client."""

    def test_openai_call(self, persona):
        client = Mock()
        client.chat.completions.create.return_value = SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(
                content="Done.\n```yaml\nissues:\n  - {title: Weak hashing, severity: high}\n```"
            ))],
            usage=SimpleNamespace(prompt_tokens=120, completion_tokens=40),
        )
        agent = PersonaAgent(persona, config={"llm": {"provider": "openai", "model": "gpt-test"}}, client=client)

        output = agent.execute("review", {"scope": "auth"}, role_context("security-auditor", stage="review"))

        assert output["issues"][0]["title"] == "Weak hashing"
        assert output["metrics"]["tokens_prompt"] == 120
        assert output["metrics"]["model"] == "gpt-test"
        messages = client.chat.completions.create.call_args.kwargs["messages"]
        assert messages[0]["content"].startswith("# Security Auditor")
        assert "scope" in messages[1]["content"]

    def test_anthropic_call(self, persona):
        client = Mock()
        client.messages.create.return_value = SimpleNamespace(
            content=[SimpleNamespace(text="All clear.")],
            usage=SimpleNamespace(input_tokens=10, output_tokens=3),
        )
        agent = PersonaAgent(persona, config={"llm": {"provider": "anthropic"}}, client=client)
        output = agent.execute("review", {}, role_context("security-auditor"))
        assert output["summary"] == "All clear."
        assert agent.model == "claude-3-5-haiku-latest"

    def test_prompt_includes_inbox_and_stage_outputs(self, persona):
        agent = PersonaAgent(persona, client=Mock())
        _, user = agent.build_prompt("review", {}, role_context(
            "security-auditor",
            inbox=[{"sender": "architect", "content": "Check the token flow"}],
            stage_outputs={"architect": {"summary": "draft"}},
        ))
        assert "## Message from architect\nCheck the token flow" in user
        assert "Earlier outputs in this stage" in user

    def test_unknown_provider(self, persona):
        with pytest.raises(ValueError):
            PersonaAgent(persona, config={"llm": {"provider": "mystery"}})

    def test_missing_api_key(self, persona, monkeypatch):
        monkeypatch.setattr("personaflow.agents.persona_agent.ensure_dotenv", lambda: None)
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        agent = PersonaAgent(persona)
        with pytest.raises(ValueError):
            agent.execute("review", {}, role_context("security-auditor"))


# =============================================================================
# Factory
# =============================================================================

class TestFactory:
    """Tests for building agents from specs."""

    def test_echo_spec(self):
        assert isinstance(create_agent({"type": "echo"}, "qa"), EchoAgent)

    def test_persona_spec(self, persona):
        personas = PersonaRegistry()
        personas.register(persona)
        agent = create_agent({"type": "persona", "llm": {"provider": "anthropic"}}, "security-auditor", personas)
        assert isinstance(agent, PersonaAgent)
        assert agent.persona is persona

    def test_persona_spec_unknown_persona(self):
        with pytest.raises(AgentNotFoundError):
            create_agent({"type": "persona"}, "ghost", PersonaRegistry())

    def test_unknown_type(self):
        with pytest.raises(ValueError):
            create_agent({"type": "oracle"}, "qa")

    def test_load_agents_file(self):
        agents, factory = load_agents_file(ECHO_AGENTS_FILE)
        assert agents["qa-engineer"].delay_seconds == 0.1
        default = factory("architect")
        assert isinstance(default, EchoAgent)
        assert "architect" in default.scripts

    def test_missing_file_gives_echo_default(self, tmp_path):
        agents, factory = load_agents_file(str(tmp_path / "none.yaml"))
        assert agents == {}
        assert isinstance(factory("anyone"), EchoAgent)


# =============================================================================
# RoleWorker
# =============================================================================

def task_event(task_id="task-1", reply_to="replies"):
    return {"id": task_id, "reply_to": reply_to}


def task_data(role="architect", **extra):
    return {"role": role, "stage": "design", "run_id": "run-1", "action": "design", **extra}


class TestRoleWorker:
    """Tests for serving a role over a (mocked) bus."""

    def test_success_sends_result(self):
        bus = Mock()
        worker = RoleWorker("architect", EchoAgent(), bus=bus)
        worker.on_task(task_event(), task_data(context={"task": {"title": "Checkout"}}))

        kwargs = bus.send_result.call_args.kwargs
        assert kwargs["reply_to"] == "replies"
        assert kwargs["correlation_id"] == "task-1"
        assert kwargs["output"]["summary"] == "architect completed 'design' for Checkout"
        assert worker.tasks_processed == 1

    def test_duplicate_task_ignored(self):
        bus = Mock()
        worker = RoleWorker("architect", EchoAgent(), bus=bus)
        worker.on_task(task_event(), task_data())
        worker.on_task(task_event(), task_data())
        assert bus.send_result.call_count == 1

    def test_failure_sends_error(self):
        bus = Mock()
        agent = EchoAgent(config={"failures": {"architect": 1}})
        worker = RoleWorker("architect", agent, bus=bus)
        worker.on_task(task_event(), task_data())

        kwargs = bus.send_error.call_args.kwargs
        assert kwargs["code"] == "INTERNAL"
        assert kwargs["retryable"] is False
        assert kwargs["subject"] == "run-1"
        assert worker.tasks_failed == 1

    def test_failed_task_can_be_redelivered(self):
        """Only answered tasks count for idempotency."""
        bus = Mock()
        worker = RoleWorker("architect", EchoAgent(config={"failures": {"architect": 1}}), bus=bus)
        worker.on_task(task_event(), task_data())
        worker.on_task(task_event(), task_data())
        assert bus.send_error.call_count == 1
        assert bus.send_result.call_count == 1

    def test_task_for_other_role_ignored(self):
        bus = Mock()
        worker = RoleWorker("architect", EchoAgent(), bus=bus)
        worker.on_task(task_event(), task_data(role="qa"))
        bus.send_result.assert_not_called()
        bus.send_error.assert_not_called()

    def test_control_stop(self):
        bus = Mock()
        worker = RoleWorker("architect", EchoAgent(), bus=bus)
        worker.on_control({}, {"control_type": "stop"})
        bus.stop_consuming.assert_called_once()

    @pytest.mark.parametrize("error,code", [
        (TimeoutError("slow"), "DEADLINE_EXCEEDED"),
        (KeyError("x"), "NOT_FOUND"),
        (ValueError("bad"), "INVALID_ARGUMENT"),
        (RuntimeError("boom"), "INTERNAL"),
    ])
    def test_error_codes(self, error, code):
        assert error_code_for(error) == code
