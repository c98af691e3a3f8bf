"""Tests for the generic graph executor and its input checks."""
import pytest

from conftest import make_flow, make_node
from flows.executor import INPUT_ERRORS, MAX_STEPS, GraphExecutor, check_input
from models.schemas import InputType, QuestionConfig


def _question(**fields) -> QuestionConfig:
    return QuestionConfig(question_text="?", variable_name="answer", **fields)


class TestCheckInput:
    def test_required(self):
        ok, _, error = check_input("  ", _question(validation={"required": True}))
        assert not ok
        assert error == INPUT_ERRORS["required"]

    def test_optional_empty_is_accepted(self):
        assert check_input("", _question()) == (True, "", "")

    def test_email(self):
        assert check_input("ana@example.com", _question(input_type="email"))[0]
        ok, _, error = check_input("not-an-email", _question(input_type="email"))
        assert not ok
        assert error == INPUT_ERRORS[InputType.EMAIL]

    def test_number_parses_integers(self):
        assert check_input("42", _question(input_type="number")) == (True, 42, "")
        assert check_input("2.5", _question(input_type="number")) == (True, 2.5, "")
        assert not check_input("many", _question(input_type="number"))[0]

    def test_date(self):
        assert check_input("2026-10-21", _question(input_type="date"))[1] == "2026-10-21"
        assert not check_input("21/10/2026", _question(input_type="date"))[0]

    def test_choice_by_value_label_or_index(self):
        config = _question(input_type="choice", choices=[
            {"value": "cut", "label": "Haircut"}, {"value": "color", "label": "Colouring"},
        ])
        assert check_input("2", config)[1] == "color"
        assert check_input("haircut", config)[1] == "cut"
        assert check_input("COLOR", config)[1] == "color"
        assert not check_input("3", config)[0]

    def test_custom_error_message_wins(self):
        config = _question(input_type="phone", validation={"error_message": "Digits please"})
        assert check_input("call me", config) == (False, None, "Digits please")

    def test_text_length_and_pattern(self):
        config = _question(validation={"min_length": 2, "max_length": 4, "pattern": "^[a-z]+$"})
        assert check_input("abc", config)[0]
        assert not check_input("a", config)[0]
        assert not check_input("abcde", config)[0]
        assert not check_input("AB", config)[0]


class TestGraphExecutor:
    @pytest.mark.asyncio
    async def test_linear_flow(self, linear_flow):
        executor = GraphExecutor()
        session = executor.start(linear_flow)
        assert session.variables == {"shopName": "Corner Shop"}

        step = await executor.advance(linear_flow, session)
        assert step.replies == ["Hello from Corner Shop!", "What is your name?"]
        assert step.session.awaiting_input
        assert step.session.current_node_id == "ask_name"

        step = await executor.advance(linear_flow, step.session, "Ana")
        assert step.replies == ["Goodbye Ana."]
        assert step.session.finished
        assert step.session.variables["customerName"] == "Ana"

    @pytest.mark.asyncio
    async def test_advance_does_not_mutate_input_session(self, linear_flow):
        executor = GraphExecutor()
        session = executor.start(linear_flow)
        await executor.advance(linear_flow, session)
        assert session.current_node_id == "start"
        assert session.visited == []

    @pytest.mark.asyncio
    async def test_rejected_input_keeps_waiting(self, linear_flow):
        executor = GraphExecutor()
        step = await executor.advance(linear_flow, executor.start(linear_flow))
        step = await executor.advance(linear_flow, step.session, "   ")
        assert step.replies == [INPUT_ERRORS["required"]]
        assert step.session.current_node_id == "ask_name"
        assert not step.session.finished

    @pytest.mark.asyncio
    async def test_choice_question_lists_options(self):
        flow = make_flow([
            make_node("start", "start", ["pick"]),
            make_node("pick", "question", ["end"], question_text="Which size?", variable_name="size",
                      input_type="choice", choices=[{"value": "s", "label": "Small"},
                                                    {"value": "l", "label": "Large"}]),
            make_node("end", "end", end_message="Size {{size}} it is."),
        ])
        executor = GraphExecutor()
        step = await executor.advance(flow, executor.start(flow))
        assert step.replies == ["Which size?\n\n1. Small\n2. Large"]

        step = await executor.advance(flow, step.session, "2")
        assert step.replies == ["Size l it is."]

    @pytest.mark.asyncio
    async def test_condition_branches(self):
        flow = make_flow([
            make_node("start", "start", ["check"]),
            make_node("check", "condition", ["vip", "regular"], labels=["true", "false"],
                      conditions=[{"variable": "tier", "operator": "equals", "value": "gold"}]),
            make_node("vip", "end", end_message="Welcome back, VIP."),
            make_node("regular", "end", end_message="Welcome."),
        ])
        executor = GraphExecutor()
        gold = await executor.advance(flow, executor.start(flow, {"tier": "Gold"}))
        assert gold.replies == ["Welcome back, VIP."]
        plain = await executor.advance(flow, executor.start(flow, {"tier": "silver"}))
        assert plain.replies == ["Welcome."]

    @pytest.mark.asyncio
    async def test_set_variable_action(self):
        flow = make_flow([
            make_node("start", "start", ["set"]),
            make_node("set", "action", ["end"], action_type="set_variable",
                      action_parameters={"name": "greeting", "value": "Hi {{who}}"}),
            make_node("end", "end", end_message="{{greeting}}!"),
        ])
        executor = GraphExecutor()
        step = await executor.advance(flow, executor.start(flow, {"who": "Sam"}))
        assert step.replies == ["Hi Sam!"]
        assert step.session.variables["greeting"] == "Hi Sam"

    @pytest.mark.asyncio
    async def test_injected_action_handler(self):
        calls = []

        async def record(params, variables):
            calls.append(params)
            return {"transaction_id": "tx-1"}

        flow = make_flow([
            make_node("start", "start", ["act"]),
            make_node("act", "action", ["end"], action_type="create_transaction",
                      action_parameters={"transaction_type": "order"}),
            make_node("end", "end", end_message="Ref {{transaction_id}}"),
        ])
        executor = GraphExecutor(action_handlers={"create_transaction": record})
        step = await executor.advance(flow, executor.start(flow))
        assert calls == [{"transaction_type": "order"}]
        assert step.replies == ["Ref tx-1"]

    @pytest.mark.asyncio
    async def test_default_end_message(self):
        flow = make_flow([make_node("start", "start", ["end"]), make_node("end", "end")])
        executor = GraphExecutor()
        step = await executor.advance(flow, executor.start(flow))
        assert step.replies == ["Thank you! This conversation has ended."]

    @pytest.mark.asyncio
    async def test_missing_node_finishes_with_error(self):
        flow = make_flow([make_node("start", "start", ["ghost"])])
        executor = GraphExecutor()
        step = await executor.advance(flow, executor.start(flow))
        assert step.session.finished
        assert step.error == "Node 'ghost' not found"

    @pytest.mark.asyncio
    async def test_loop_without_input_hits_step_limit(self):
        flow = make_flow([
            make_node("start", "start", ["a"]),
            make_node("a", "message", ["b"], message_text="A"),
            make_node("b", "message", ["a"], message_text="B"),
        ])
        executor = GraphExecutor()
        step = await executor.advance(flow, executor.start(flow))
        assert step.session.finished
        assert str(MAX_STEPS) in step.error
        assert len(step.replies) == MAX_STEPS - 1
