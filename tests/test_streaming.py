import asyncio
import json

from openchatmobile.server.inference import Done, Error, Token
from openchatmobile.server.registry import Connection
from openchatmobile.server.streaming import RelaySession


class GatedCompletions:
    """Completion client whose events are released one by one by the test."""

    def __init__(self) -> None:
        self.queue: asyncio.Queue = asyncio.Queue()
        self.calls: list[tuple] = []

    async def stream(self, prompt, n_predict, temperature):
        self.calls.append((prompt, n_predict, temperature))
        while True:
            event = await self.queue.get()
            yield event
            if event.terminal:
                return


async def _until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.001)


def _chat(**extra):
    return json.dumps({"type": "chat", "message": "hi", **extra})


def _session(ws):
    completions = GatedCompletions()
    return RelaySession(Connection("c1", ws), completions), completions


def test_tokens_forwarded_in_order_then_done(fake_ws):
    ws = fake_ws()

    async def run():
        session, completions = _session(ws)
        await session.handle(_chat(maxTokens=10, temperature=0.5))
        for text in ("a", "b", "c"):
            await completions.queue.put(Token(text))
        await completions.queue.put(Done())
        await _until(lambda: not session.busy)
        return completions.calls

    calls = asyncio.run(run())
    assert calls == [("hi", 10, 0.5)]
    assert ws.sent == [
        {"type": "token", "token": "a"},
        {"type": "token", "token": "b"},
        {"type": "token", "token": "c"},
        {"type": "done"},
    ]


def test_stop_halts_tokens_for_that_generation(fake_ws):
    ws = fake_ws()

    async def run():
        session, completions = _session(ws)
        await session.handle(_chat())
        await completions.queue.put(Token("a"))
        await completions.queue.put(Token("b"))
        await _until(lambda: len(ws.sent) == 2)

        await session.handle(json.dumps({"type": "stop"}))
        assert not session.busy

        await completions.queue.put(Token("late"))
        await completions.queue.put(Done())
        await asyncio.sleep(0.05)

    asyncio.run(run())
    assert ws.sent == [
        {"type": "token", "token": "a"},
        {"type": "token", "token": "b"},
        {"type": "done", "reason": "stopped"},
    ]


def test_second_chat_while_streaming_is_rejected(fake_ws):
    ws = fake_ws()

    async def run():
        session, completions = _session(ws)
        await session.handle(_chat())
        await completions.queue.put(Token("a"))
        await _until(lambda: len(ws.sent) == 1)

        await session.handle(_chat())
        assert session.busy

        await completions.queue.put(Done())
        await _until(lambda: not session.busy)
        return completions.calls

    calls = asyncio.run(run())
    assert len(calls) == 1
    assert ws.sent == [
        {"type": "token", "token": "a"},
        {"type": "error", "message": "generation already in progress"},
        {"type": "done"},
    ]


def test_new_chat_accepted_after_previous_finished(fake_ws):
    ws = fake_ws()

    async def run():
        session, completions = _session(ws)
        await session.handle(_chat())
        await completions.queue.put(Done())
        await _until(lambda: not session.busy)
        await session.handle(_chat())
        await completions.queue.put(Token("x"))
        await completions.queue.put(Done())
        await _until(lambda: len(ws.sent) == 3)
        return completions.calls

    assert len(asyncio.run(run())) == 2
    assert ws.sent[-2:] == [{"type": "token", "token": "x"}, {"type": "done"}]


def test_upstream_error_is_forwarded(fake_ws):
    ws = fake_ws()

    async def run():
        session, completions = _session(ws)
        await session.handle(_chat())
        await completions.queue.put(Token("a"))
        await completions.queue.put(Error("llama-server responded with 500"))
        await _until(lambda: not session.busy)

    asyncio.run(run())
    assert ws.sent == [
        {"type": "token", "token": "a"},
        {"type": "error", "message": "llama-server responded with 500"},
    ]


def test_stop_without_generation_is_a_noop(fake_ws):
    ws = fake_ws()

    async def run():
        session, _ = _session(ws)
        await session.handle(json.dumps({"type": "stop"}))

    asyncio.run(run())
    assert ws.sent == []


def test_invalid_messages_get_structured_errors(fake_ws):
    ws = fake_ws()

    async def run():
        session, completions = _session(ws)
        await session.handle("{broken")
        await session.handle("[1, 2]")
        await session.handle(json.dumps({"type": "dance"}))
        await session.handle(json.dumps({"type": "chat"}))
        await session.handle(json.dumps({"type": "chat", "message": "hi", "maxTokens": 0}))
        await session.handle(json.dumps({"type": "pong"}))
        assert not session.busy
        return completions.calls

    assert asyncio.run(run()) == []
    assert [m["type"] for m in ws.sent] == ["error"] * 5
    assert ws.sent[0]["message"] == "invalid JSON message"
    assert ws.sent[2]["message"] == "unknown message type 'dance'"
    assert ws.sent[3]["message"].startswith("invalid chat request")


def test_send_failure_ends_generation_quietly(fake_ws):
    ws = fake_ws(fail=True)

    async def run():
        session, completions = _session(ws)
        await session.start({"type": "chat", "message": "hi"})
        await completions.queue.put(Token("a"))
        await _until(lambda: not session.busy)
        return session._task

    task = asyncio.run(run())
    assert task.exception() is None


def test_close_cancels_generation_silently(fake_ws):
    ws = fake_ws()

    async def run():
        session, completions = _session(ws)
        await session.handle(_chat())
        await _until(lambda: completions.calls)
        await session.close()
        assert not session.busy
        await completions.queue.put(Token("late"))
        await asyncio.sleep(0.02)

    asyncio.run(run())
    assert ws.sent == []


def test_prompt_built_from_history(fake_ws):
    ws = fake_ws()

    async def run():
        session, completions = _session(ws)
        await session.handle(json.dumps({
            "type": "chat",
            "message": "And now?",
            "systemPrompt": "Be brief.",
            "history": [
                {"role": "user", "content": "Hello"},
                {"role": "assistant", "content": "Hi there"},
            ],
        }))
        await completions.queue.put(Done())
        await _until(lambda: not session.busy)
        return completions.calls

    prompt = asyncio.run(run())[0][0]
    assert prompt == "Be brief.\n\nUser: Hello\nAssistant: Hi there\nUser: And now?\nAssistant:"


class SlowCloseCompletions:
    """Completion stream that finishes at once but takes a while to close."""

    async def stream(self, prompt, n_predict, temperature):
        try:
            yield Token("a")
            yield Done()
        finally:
            await asyncio.sleep(0.05)


def test_stop_while_upstream_closes_sends_no_second_done(fake_ws):
    ws = fake_ws()

    async def run():
        session = RelaySession(Connection("c1", ws), SlowCloseCompletions())
        await session.handle(_chat())
        await _until(lambda: len(ws.sent) == 2)
        assert session.busy

        await session.handle(json.dumps({"type": "stop"}))
        assert not session.busy

    asyncio.run(run())
    assert ws.sent == [{"type": "token", "token": "a"}, {"type": "done"}]


def test_invalid_frame_gets_error(fake_ws):
    ws = fake_ws()

    async def run():
        session, _ = _session(ws)
        await session.handle_invalid_frame()

    asyncio.run(run())
    assert ws.sent == [{"type": "error", "message": "binary frames must be UTF-8 encoded JSON"}]
