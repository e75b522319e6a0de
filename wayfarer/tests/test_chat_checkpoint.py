import asyncio

from wayfarer.src.exploration.events import EventType
from wayfarer.src.exploration.identity import url_hash
from wayfarer.src.exploration.models import (
    ChatDecision,
    ChatRequestType,
    ExplorationPhase,
    PageStatus,
    UserInputResponse,
)
from wayfarer.src.exploration.page_queue import START_PRIORITY

from conftest import START_URL, FakeBrowser, FakeChat

PRICING_URL = "https://example.com/pricing"
CAREERS_URL = "https://example.com/careers"
DOCS_URL = "https://example.com/docs"
EMAIL_INPUT = {
    "tool": "request_input",
    "instruction": "Ask for an email address",
    "inputs": [{"key": "email", "type": "email", "prompt": "Email?"}],
}


def _chat_on_decision(env, number, text, chat_tasks):
    """Send a chat message from inside the ``number``-th decision call."""
    seen = []

    async def hook(context):
        seen.append(context.url)
        if len(seen) == number:
            chat_tasks.append(asyncio.create_task(env.engine.chat.handle_message(text)))

    env.decisions.before_decide = hook


def _started_urls(env):
    return [event.data["url"] for event in env.sink.of_type(EventType.PAGE_STARTED)]


def test_checkpoint_round_trips_through_storage_and_resume(make_engine):
    env = make_engine()
    engine = env.engine

    async def prepare():
        await engine.page_queue.enqueue(START_URL, START_PRIORITY)
        await engine.page_queue.enqueue(PRICING_URL)
        page = engine.page_queue.pop()
        page.status = PageStatus.IN_PROGRESS
        engine.session.current_page = page.url_hash
        engine.session.global_step_counter = 7
        env.storage.save_page(engine.session_id, page)
        env.storage.save_metadata(engine.session_id, engine.session.metadata)
        return engine.checkpoint()

    checkpoint = asyncio.run(prepare())

    assert checkpoint.current_page_hash == url_hash(START_URL)
    assert checkpoint.remaining_queue == [url_hash(PRICING_URL)]
    assert checkpoint.last_step_number == 7
    assert checkpoint.exploration_phase == ExplorationPhase.ACTIVE
    assert env.storage.load_checkpoint(engine.session_id) == checkpoint

    resumed = make_engine(resume_session_id=engine.session_id, is_exploration=True)
    assert resumed.engine.session_id == engine.session_id

    asyncio.run(resumed.engine.run_to_end())

    assert _started_urls(resumed) == ["https://example.com/", PRICING_URL]
    assert resumed.engine.session.global_step_counter > 7


def test_restore_keeps_pages_queued_after_checkpoint(make_engine):
    env = make_engine()
    engine = env.engine

    async def scenario():
        await engine.page_queue.enqueue(PRICING_URL)
        checkpoint = engine.checkpoint()
        await engine.page_queue.enqueue(CAREERS_URL)
        engine.page_queue.pop()
        engine.page_queue.pop()
        engine.restore(checkpoint)

    asyncio.run(scenario())

    assert engine.page_queue.snapshot() == [url_hash(PRICING_URL)]

    async def again():
        checkpoint = engine.checkpoint()
        await engine.page_queue.enqueue("https://example.com/blog")
        engine.restore(checkpoint)

    asyncio.run(again())

    assert engine.page_queue.snapshot() == [
        url_hash(PRICING_URL),
        url_hash("https://example.com/blog"),
    ]


def test_question_pauses_and_resumes_interrupted_page(make_engine):
    chat = FakeChat(ChatDecision(request_type=ChatRequestType.QUESTION, response="Only the home page so far."))
    env = make_engine(
        {
            START_URL: [
                {"tool": "act", "instruction": "Scroll down"},
                {"tool": "act", "instruction": "Open FAQ", "isCurrentPageExecutionCompleted": True},
            ]
        },
        chat=chat,
        is_exploration=True,
    )
    chat_tasks = []
    _chat_on_decision(env, 1, "what did you find?", chat_tasks)

    async def scenario():
        achieved = await env.engine.run_to_end()
        return achieved, await chat_tasks[0]

    achieved, decision = asyncio.run(scenario())

    assert achieved is False
    assert decision.response == "Only the home page so far."
    # the decision made while the chat held the session is dropped
    assert env.browser.acts == ["Open FAQ"]
    assert _started_urls(env) == ["https://example.com/", "https://example.com/"]

    message, checkpoint, page_count, history_len = chat.calls[0]
    assert message == "what did you find?"
    assert checkpoint.current_page_hash == url_hash(START_URL)
    assert history_len == 1

    chat_events = env.sink.of_type(EventType.CHAT_MESSAGE)
    assert [event.data["role"] for event in chat_events] == ["user", "assistant"]
    assert chat_events[1].data["requestType"] == "question"
    assert len(env.sink.of_type(EventType.SESSION_COMPLETED)) == 1
    assert env.engine.gate.interrupted is False
    assert env.engine.session.pages[url_hash(START_URL)].status == PageStatus.COMPLETED


def test_exploration_request_puts_target_first(make_engine):
    chat = FakeChat(
        ChatDecision(
            request_type=ChatRequestType.EXPLORATION,
            target_page="Careers",
            target_url=CAREERS_URL,
            response="Heading to the careers page.",
        )
    )
    env = make_engine(
        {
            START_URL: [
                {"tool": "act", "instruction": "Click Pricing link"},
                {"tool": "act", "instruction": "Open FAQ"},
            ]
        },
        browser=FakeBrowser(transitions={"Click Pricing link": PRICING_URL}),
        chat=chat,
        is_exploration=True,
    )
    chat_tasks = []
    _chat_on_decision(env, 2, "look at the careers page", chat_tasks)

    async def scenario():
        await env.engine.run_to_end()
        await chat_tasks[0]

    asyncio.run(scenario())

    assert _started_urls(env) == ["https://example.com/", CAREERS_URL, "https://example.com/", PRICING_URL]
    navigated = env.sink.of_type(EventType.CHAT_NAVIGATED)
    assert [event.data["url"] for event in navigated] == [CAREERS_URL]
    careers = env.engine.session.pages[url_hash(CAREERS_URL)]
    assert careers.priority == START_PRIORITY
    assert careers.status == PageStatus.COMPLETED


def test_task_request_navigates_without_queueing(make_engine):
    chat = FakeChat(ChatDecision(request_type=ChatRequestType.TASK_SPECIFIC, target_url="https://example.com/checkout"))
    env = make_engine(
        {START_URL: [{"tool": "act", "instruction": "Scroll down"}]},
        chat=chat,
        is_exploration=True,
    )
    chat_tasks = []
    _chat_on_decision(env, 1, "go to checkout", chat_tasks)

    async def scenario():
        await env.engine.run_to_end()
        await chat_tasks[0]

    asyncio.run(scenario())

    checkout = url_hash("https://example.com/checkout")
    assert "https://example.com/checkout" in env.browser.visits
    assert checkout in env.engine.session.pages
    assert env.engine.session.pages[checkout].status == PageStatus.QUEUED
    assert "https://example.com/checkout" not in _started_urls(env)


def test_chat_failure_still_resumes(make_engine):
    env = make_engine(
        {START_URL: [{"tool": "act", "instruction": "Scroll down", "isCurrentPageExecutionCompleted": True}]},
        chat=FakeChat(error=RuntimeError("chat model unavailable")),
        is_exploration=True,
    )
    chat_tasks = []
    _chat_on_decision(env, 1, "hello?", chat_tasks)

    async def scenario():
        achieved = await env.engine.run_to_end()
        return achieved, await chat_tasks[0]

    achieved, decision = asyncio.run(scenario())

    assert decision is None
    errors = env.sink.of_type(EventType.CHAT_ERROR)
    assert errors[0].data["error"] == "chat model unavailable"
    assert len(env.sink.of_type(EventType.SESSION_COMPLETED)) == 1
    assert env.engine.session.pages[url_hash(START_URL)].status == PageStatus.COMPLETED


def test_chat_after_completion_stays_parked(make_engine):
    env = make_engine(
        {START_URL: [{"tool": "act", "instruction": "Scroll down", "isCurrentPageExecutionCompleted": True}]},
        chat=FakeChat(),
        is_exploration=True,
    )

    async def scenario():
        await env.engine.run_to_end()
        finished_task = env.engine.run_task
        await env.engine.chat.handle_message("anything else?")
        return finished_task

    finished_task = asyncio.run(scenario())

    assert env.engine.run_task is finished_task
    assert env.storage.load_checkpoint(env.engine.session_id) is None
    assert env.engine.session.metadata.phase == ExplorationPhase.COMPLETED
    assert env.engine.gate.interrupted is False
    assert len(env.sink.of_type(EventType.SESSION_COMPLETED)) == 1


def test_exploration_request_after_completion_explores_target(make_engine):
    env = make_engine(
        {START_URL: [{"tool": "act", "instruction": "Scroll down", "isCurrentPageExecutionCompleted": True}]},
        chat=FakeChat(ChatDecision(request_type=ChatRequestType.EXPLORATION, target_url=CAREERS_URL)),
        is_exploration=True,
    )

    async def scenario():
        await env.engine.run_to_end()
        await env.engine.chat.handle_message("now look at careers")
        await env.engine.wait_suspended()

    asyncio.run(scenario())

    assert _started_urls(env) == ["https://example.com/", CAREERS_URL]
    assert len(env.sink.of_type(EventType.SESSION_COMPLETED)) == 2


def test_restart_after_chat_and_finish_does_not_rerun_pages(make_engine):
    env = make_engine(
        {
            START_URL: [
                {"tool": "act", "instruction": "Click Pricing link"},
                {"tool": "act", "instruction": "Open FAQ", "isCurrentPageExecutionCompleted": True},
            ]
        },
        browser=FakeBrowser(transitions={"Click Pricing link": PRICING_URL}),
        chat=FakeChat(ChatDecision(request_type=ChatRequestType.QUESTION, response="Pricing is next.")),
        is_exploration=True,
    )
    chat_tasks = []
    _chat_on_decision(env, 2, "anything interesting?", chat_tasks)

    async def scenario():
        await env.engine.run_to_end()
        await chat_tasks[0]

    asyncio.run(scenario())
    session_id = env.engine.session_id

    assert _started_urls(env) == ["https://example.com/", "https://example.com/", PRICING_URL]
    checkpoint = env.storage.load_checkpoint(session_id)
    assert checkpoint.exploration_phase == ExplorationPhase.COMPLETED
    assert checkpoint.remaining_queue == []

    restarted = make_engine(resume_session_id=session_id, is_exploration=True)
    achieved = asyncio.run(restarted.engine.run_to_end())

    assert achieved is False
    assert _started_urls(restarted) == []
    assert restarted.sink.of_type(EventType.SESSION_COMPLETED) == []
    assert restarted.browser.visits == []


def test_restart_skips_pages_finished_after_a_stale_checkpoint(make_engine):
    env = make_engine()
    engine = env.engine
    blog_url = "https://example.com/blog"

    async def crash_midway():
        await engine.page_queue.enqueue(START_URL, START_PRIORITY)
        await engine.page_queue.enqueue(PRICING_URL)
        await engine.page_queue.enqueue(DOCS_URL)
        home = engine.page_queue.pop()
        home.status = PageStatus.IN_PROGRESS
        engine.session.current_page = home.url_hash
        engine.checkpoint()

        # progress made after the checkpoint was written
        await engine.page_queue.enqueue(blog_url)
        pages = engine.session.pages
        pages[home.url_hash].status = PageStatus.COMPLETED
        pages[url_hash(PRICING_URL)].status = PageStatus.COMPLETED
        pages[url_hash(DOCS_URL)].status = PageStatus.IN_PROGRESS
        pages[url_hash(DOCS_URL)].last_step_number = 9
        for page in pages.values():
            env.storage.save_page(engine.session_id, page)
        env.storage.save_metadata(engine.session_id, engine.session.metadata)

    asyncio.run(crash_midway())

    restarted = make_engine(resume_session_id=engine.session_id, is_exploration=True)
    asyncio.run(restarted.engine.run_to_end())

    assert _started_urls(restarted) == [DOCS_URL, blog_url]
    assert restarted.decisions.contexts[0].step_number == 10
    assert len(restarted.sink.of_type(EventType.SESSION_COMPLETED)) == 1
    assert all(page.status == PageStatus.COMPLETED for page in restarted.engine.session.pages.values())


def test_restart_without_checkpoint_requeues_unfinished_pages(make_engine):
    env = make_engine()
    engine = env.engine

    async def crash_midway():
        await engine.page_queue.enqueue(START_URL, START_PRIORITY)
        await engine.page_queue.enqueue(PRICING_URL)
        await engine.page_queue.enqueue(DOCS_URL)
        pages = engine.session.pages
        pages[url_hash(START_URL)].status = PageStatus.COMPLETED
        pages[url_hash(DOCS_URL)].status = PageStatus.IN_PROGRESS
        for page in pages.values():
            env.storage.save_page(engine.session_id, page)
        env.storage.save_metadata(engine.session_id, engine.session.metadata)

    asyncio.run(crash_midway())
    assert env.storage.load_checkpoint(engine.session_id) is None

    restarted = make_engine(resume_session_id=engine.session_id, is_exploration=True)
    asyncio.run(restarted.engine.run_to_end())

    # the page that was in progress goes first
    assert _started_urls(restarted) == [DOCS_URL, PRICING_URL]
    assert len(restarted.sink.of_type(EventType.SESSION_COMPLETED)) == 1


def test_question_during_input_request_does_not_wait_for_the_answer(make_engine, wait_until):
    env = make_engine(
        {
            START_URL: [
                EMAIL_INPUT,
                {"tool": "act", "instruction": "Submit form", "isCurrentPageExecutionCompleted": True},
            ]
        },
        chat=FakeChat(ChatDecision(request_type=ChatRequestType.QUESTION, response="Waiting for your email.")),
        is_exploration=True,
        input_timeout_seconds=30,
    )

    async def scenario():
        run = asyncio.create_task(env.engine.run_to_end())
        await wait_until(lambda: env.engine.input_broker.waiting)
        decision = await asyncio.wait_for(env.engine.chat.handle_message("what are you waiting for?"), 1)
        interrupted = env.engine.gate.interrupted
        env.engine.input_broker.submit(UserInputResponse(values={"email": "me@example.com"}))
        return decision, interrupted, await run

    decision, interrupted, achieved = asyncio.run(scenario())

    assert decision.response == "Waiting for your email."
    assert interrupted is False
    assert achieved is False
    assert env.browser.acts == ["Submit form"]
    assert _started_urls(env) == ["https://example.com/"]
    assert env.engine.session.user_inputs["email"].value == "me@example.com"


def test_navigation_request_during_input_request_drops_the_input(make_engine, wait_until):
    env = make_engine(
        {
            START_URL: [
                EMAIL_INPUT,
                {"tool": "act", "instruction": "Open FAQ", "isCurrentPageExecutionCompleted": True},
            ]
        },
        chat=FakeChat(ChatDecision(request_type=ChatRequestType.EXPLORATION, target_url=CAREERS_URL)),
        is_exploration=True,
        input_timeout_seconds=30,
    )

    async def scenario():
        run = asyncio.create_task(env.engine.run_to_end())
        await wait_until(lambda: env.engine.input_broker.waiting)
        await asyncio.wait_for(env.engine.chat.handle_message("look at careers instead"), 1)
        await run

    asyncio.run(scenario())

    assert _started_urls(env) == ["https://example.com/", CAREERS_URL, "https://example.com/"]
    home = env.engine.session.pages[url_hash(START_URL)]
    assert [step.instruction for step in home.executed_steps] == ["Open FAQ"]
    assert env.engine.session.user_inputs == {}
