import asyncio

from wayfarer.src.exploration.events import EventType
from wayfarer.src.exploration.identity import url_hash
from wayfarer.src.exploration.models import ActDecision, ExecutedStep, PageStatus, StandbyDecision, ToolName
from wayfarer.src.exploration.page_loop import counts_toward_budget
from wayfarer.src.exploration.page_queue import FLOW_END_PRIORITY, START_PRIORITY

from conftest import START_URL, FakeBrowser

PRICING_URL = "https://example.com/pricing"


async def _process_start(env):
    await env.engine.page_queue.enqueue(START_URL, START_PRIORITY)
    page = env.engine.page_queue.pop()
    finished = await env.engine.page_loop.process(page)
    return page, finished


def test_find_pricing_queues_new_page_and_completes_start(make_engine):
    env = make_engine(
        {START_URL: [{"tool": "act", "instruction": "Click Pricing link", "isCurrentPageExecutionCompleted": True}]},
        browser=FakeBrowser(transitions={"Click Pricing link": PRICING_URL}),
    )

    page, finished = asyncio.run(_process_start(env))

    assert finished is True
    assert page.status == PageStatus.COMPLETED
    assert env.engine.page_queue.snapshot() == [url_hash(PRICING_URL)]
    assert len(page.executed_steps) == 1
    step = page.executed_steps[0]
    assert step.success and step.url_changed
    assert step.new_url == PRICING_URL
    assert "QUEUED=true (navigated back to original page)" in step.result
    # went back to the page being processed
    assert env.browser.visits[-1] == "https://example.com/"
    # only one decision was requested for the page
    assert len(env.decisions.contexts) == 1
    assert env.engine.session.metadata.total_actions_executed == 1


def test_full_run_reaches_objective_on_discovered_page(make_engine):
    env = make_engine(
        {
            START_URL: [{"tool": "act", "instruction": "Click Pricing link", "isCurrentPageExecutionCompleted": True}],
            PRICING_URL: [{"tool": "act", "instruction": "Open the Pro plan details"}],
        },
        browser=FakeBrowser(transitions={"Click Pricing link": PRICING_URL}),
        achieving={"Open the Pro plan details"},
    )

    achieved = asyncio.run(env.engine.run_to_end())

    assert achieved is True
    metadata = env.storage.load_metadata(env.engine.session_id)
    assert metadata.objective_achieved is True
    assert metadata.phase.value == "completed"
    assert metadata.total_pages_discovered == 2
    pricing = env.engine.session.pages[url_hash(PRICING_URL)]
    assert pricing.objective_achieved is True

    completed = env.sink.of_type(EventType.SESSION_COMPLETED)
    assert len(completed) == 1
    assert completed[0].data["success"] is True
    assert completed[0].data["userName"] == "tester"

    history = env.storage.load_decision_history(env.engine.session_id)
    assert [entry["decision"]["instruction"] for entry in history] == [
        "Click Pricing link",
        "Open the Pro plan details",
    ]


def test_exhausted_queue_finishes_without_objective(make_engine):
    env = make_engine({START_URL: [{"tool": "act", "instruction": "Scroll down", "isCurrentPageExecutionCompleted": True}]})

    achieved = asyncio.run(env.engine.run_to_end())

    assert achieved is False
    assert env.sink.of_type(EventType.SESSION_COMPLETED)[0].data["objectiveAchieved"] is False
    assert env.decisions.assessed == ["Scroll down"]


def test_sensitive_flow_suppresses_discovery_and_reenters_once(make_engine):
    login_url = "https://example.com/login"
    dashboard_url = "https://example.com/dashboard"
    env = make_engine(
        {
            START_URL: [
                {"tool": "act", "instruction": "Click Sign in", "isInSensitiveFlow": True},
                {"tool": "act", "instruction": "Submit credentials", "isInSensitiveFlow": True},
                {"tool": "act", "instruction": "Open account menu", "isInSensitiveFlow": False},
            ]
        },
        browser=FakeBrowser(transitions={"Click Sign in": login_url, "Submit credentials": dashboard_url}),
        is_exploration=True,
    )

    page, finished = asyncio.run(_process_start(env))
    session = env.engine.session

    assert finished is True
    assert page.status == PageStatus.COMPLETED
    assert url_hash(login_url) not in session.pages
    assert [step.instruction for step in page.executed_steps] == ["Click Sign in", "Submit credentials"]
    assert all("QUEUED=false (sensitive flow - stayed on new page)" in s.result for s in page.executed_steps)
    # the decision that ended the flow is not executed
    assert env.browser.acts == ["Click Sign in", "Submit credentials"]

    dashboard = url_hash(dashboard_url)
    assert env.engine.page_queue.snapshot() == [dashboard]
    assert session.pages[dashboard].priority == FLOW_END_PRIORITY
    assert session.flow_context.is_in_sensitive_flow is False
    assert session.flow_context.start_url == "https://example.com/"
    assert len(env.sink.of_type(EventType.URL_DISCOVERED)) == 2


def test_step_budget_ignores_standby(make_engine):
    env = make_engine(
        {
            START_URL: [
                {"tool": "standby", "instruction": "Wait for banner", "waitSeconds": 0.01},
                {"tool": "act", "instruction": "Scroll down"},
                {"tool": "standby", "instruction": "Wait for lazy content", "waitSeconds": 0.01},
                {"tool": "act", "instruction": "Open FAQ accordion"},
                {"tool": "act", "instruction": "Never reached"},
            ]
        },
        max_steps_per_page=2,
        is_exploration=True,
    )

    page, finished = asyncio.run(_process_start(env))

    assert finished is True
    assert [step.tool for step in page.executed_steps] == [
        ToolName.STANDBY,
        ToolName.ACT,
        ToolName.STANDBY,
        ToolName.ACT,
    ]
    assert env.browser.acts == ["Scroll down", "Open FAQ accordion"]


def test_counts_toward_budget_rules():
    act = ActDecision(instruction="click")
    step = ExecutedStep(step_number=1, tool=ToolName.ACT, success=True)
    moved = step.model_copy(update={"new_url": PRICING_URL})

    assert counts_toward_budget(act, step) is True
    assert counts_toward_budget(act, moved) is False
    assert counts_toward_budget(ActDecision(instruction="login", is_in_sensitive_flow=True), step) is False
    assert counts_toward_budget(StandbyDecision(wait_seconds=1), step) is False


def test_navigation_error_completes_page_and_moves_on(make_engine):
    env = make_engine(browser=FakeBrowser(broken_urls=[START_URL]))

    achieved = asyncio.run(env.engine.run_to_end())

    assert achieved is False
    page = env.engine.session.pages[url_hash(START_URL)]
    assert page.status == PageStatus.COMPLETED
    completed = env.sink.of_type(EventType.PAGE_COMPLETED)
    assert len(completed) == 1
    assert "ERR_CONNECTION_REFUSED" in completed[0].data["error"]
    assert env.decisions.contexts == []


def test_inactive_session_stops_between_decision_and_dispatch(make_engine):
    env = make_engine({START_URL: [{"tool": "act", "instruction": "Click Pricing link"}]})

    async def deactivate(context):
        env.registry.deactivate("tester")

    env.decisions.before_decide = deactivate

    achieved = asyncio.run(env.engine.run_to_end())

    assert achieved is False
    assert env.browser.acts == []
    assert EventType.TOOL_STARTED.value not in env.sink.types()
    assert env.sink.types()[-1] == EventType.SESSION_COMPLETED.value
    page = env.engine.session.pages[url_hash(START_URL)]
    assert page.status == PageStatus.IN_PROGRESS


def test_decision_context_carries_page_conversation(make_engine):
    env = make_engine(
        {
            START_URL: [
                {"tool": "act", "instruction": "Scroll down"},
                {"tool": "act", "instruction": "Open FAQ", "isCurrentPageExecutionCompleted": True},
            ]
        },
        is_exploration=True,
    )

    asyncio.run(_process_start(env))

    first, second = env.decisions.contexts
    assert first.conversation_history == []
    assert [turn["role"] for turn in second.conversation_history] == ["assistant", "user"]
    assert "Scroll down" in second.conversation_history[0]["content"]
    assert second.step_number == first.step_number + 1
    assert len(second.action_history) == 1


def test_flow_ending_on_the_current_page_leaves_it_queued(make_engine):
    env = make_engine(
        {
            START_URL: [
                {"tool": "act", "instruction": "Open sign-in dialog", "isInSensitiveFlow": True},
                {"tool": "act", "instruction": "Browse products", "isInSensitiveFlow": False},
            ]
        },
        is_exploration=True,
    )

    page, finished = asyncio.run(_process_start(env))
    home = url_hash(START_URL)

    assert finished is True
    assert env.engine.page_queue.snapshot() == [home]
    assert page.status == PageStatus.QUEUED
    assert page.priority == FLOW_END_PRIORITY
    assert env.storage.load_pages(env.engine.session_id)[home].status == PageStatus.QUEUED
