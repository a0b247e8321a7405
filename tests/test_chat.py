import asyncio
from types import SimpleNamespace

import discord
import httpx

from cogs.admin import Admin
from cogs.ask import Ask
from cogs.chat import Chat
from utils.responses import MARKER_FOOTERS
from utils.thread_history import DeletionMarker, ThreadContext, Turn

QUOTA_MESSAGE = "429 Resource has been exhausted (e.g. check quota)."


class FakeLoadingMessage:
    def __init__(self) -> None:
        self.edits: list[dict] = []

    async def edit(self, **kwargs) -> None:
        self.edits.append(kwargs)


def _chat_cog() -> Chat:
    cog = Chat(SimpleNamespace(user=SimpleNamespace(id=1000)))
    cog.curr_model = "gemini/gemini-1.5-pro-latest"
    return cog


def _fake_generate(monkeypatch, outcomes: list) -> list[tuple]:
    calls: list[tuple] = []

    async def fake_generate_response(config, provider_slash_model, turns, question, images=()):
        calls.append((provider_slash_model, list(turns), question))
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def fake_sleep(seconds: float) -> None:
        pass

    monkeypatch.setattr("cogs.chat.generate_response", fake_generate_response)
    monkeypatch.setattr("utils.responses.asyncio.sleep", fake_sleep)
    return calls


def test_generate_reply_edits_response_with_history(monkeypatch) -> None:
    calls = _fake_generate(monkeypatch, ["12"])
    loading_msg = FakeLoadingMessage()
    context = ThreadContext(turns=[Turn("user", "2+2?"), Turn("model", "4")])

    asyncio.run(_chat_cog().generate_reply({}, loading_msg, "times 3?", 42, context))

    assert calls == [("gemini/gemini-1.5-pro-latest", context.turns, "times 3?")]
    assert loading_msg.edits == [{"content": "12", "embeds": []}]


def test_quota_error_reissues_the_request_once(monkeypatch) -> None:
    calls = _fake_generate(monkeypatch, [Exception(QUOTA_MESSAGE), "finally"])
    loading_msg = FakeLoadingMessage()

    asyncio.run(_chat_cog().generate_reply({}, loading_msg, "hi", 42, ThreadContext()))

    assert len(calls) == 2
    assert len(loading_msg.edits) == 12
    assert loading_msg.edits[-1]["content"] == "finally"


def test_quota_retries_are_bounded_by_config(monkeypatch) -> None:
    calls = _fake_generate(monkeypatch, [Exception(QUOTA_MESSAGE), Exception(QUOTA_MESSAGE)])
    loading_msg = FakeLoadingMessage()

    asyncio.run(_chat_cog().generate_reply({"quota_retries": 0}, loading_msg, "hi", 42, ThreadContext()))

    assert len(calls) == 1
    assert loading_msg.edits[-1]["embeds"][0].footer.text == "⏱️ Retrying request in (1)"


def test_other_errors_are_not_retried(monkeypatch) -> None:
    calls = _fake_generate(monkeypatch, [RuntimeError("boom")])
    loading_msg = FakeLoadingMessage()

    asyncio.run(_chat_cog().generate_reply({}, loading_msg, "hi", 42, ThreadContext()))

    assert len(calls) == 1
    assert loading_msg.edits[0]["embeds"][0].title == "⚠️ An Error Occurred"


def test_slash_command_marker_is_rendered(monkeypatch) -> None:
    _fake_generate(monkeypatch, ["sure"])
    loading_msg = FakeLoadingMessage()
    context = ThreadContext(marker=DeletionMarker.SLASH_COMMAND)

    asyncio.run(_chat_cog().generate_reply({}, loading_msg, "hi", 42, context))

    footer = loading_msg.edits[0]["embeds"][0].footer.text
    assert footer.startswith("Reply thread history not accessible")


def _permissions(**users) -> dict:
    return {
        "users": {"admin_ids": [], "allowed_ids": [], "blocked_ids": [], **users},
        "roles": {"allowed_ids": [], "blocked_ids": []},
        "channels": {"allowed_ids": [], "blocked_ids": []},
    }


def test_blocked_user_is_not_authorized() -> None:
    message = SimpleNamespace(
        author=SimpleNamespace(id=42, roles=[]),
        channel=SimpleNamespace(id=7, type="text"),
    )
    cog = _chat_cog()

    assert asyncio.run(cog._is_message_authorized(message, {"permissions": _permissions()}))
    assert not asyncio.run(cog._is_message_authorized(message, {"permissions": _permissions(blocked_ids=[42])}))


def test_bot_mention_is_stripped_from_question() -> None:
    cog = _chat_cog()

    assert cog._strip_bot_mention("<@1000> what is up?") == "what is up?"
    assert cog._strip_bot_mention("<@!1000>hello") == "hello"


# --- Entry points ---
BOT_USER = SimpleNamespace(id=1000)
ALICE_ID = 42
GEMINI_MODEL = "gemini/gemini-1.5-pro-latest"


def _config(**overrides) -> dict:
    config = {
        "providers": {"gemini": {"api_key": "gem-key"}},
        "models": {GEMINI_MODEL: None, "gemini/gemini-1.5-flash-latest": None},
        "permissions": _permissions(admin_ids=[ALICE_ID]),
    }
    config.update(overrides)
    return config


class ChatChannel:
    type = discord.ChannelType.text
    id = 7

    def __init__(self) -> None:
        self.messages: dict[int, SimpleNamespace] = {}

    async def fetch_message(self, message_id: int) -> SimpleNamespace:
        return self.messages[message_id]

    def post(self, mid: int, author_id: int, content: str, reply_to: int | None = None) -> SimpleNamespace:
        loading_msg = FakeLoadingMessage()
        replies: list[dict] = []

        async def reply(**kwargs) -> FakeLoadingMessage:
            replies.append(kwargs)
            return loading_msg

        message = SimpleNamespace(
            id=mid,
            author=SimpleNamespace(id=author_id, bot=author_id == BOT_USER.id, roles=[]),
            content=content,
            embeds=[],
            attachments=[],
            mentions=[BOT_USER] if f"<@{BOT_USER.id}>" in content else [],
            reference=SimpleNamespace(message_id=reply_to, cached_message=None) if reply_to is not None else None,
            channel=self,
            reply=reply,
            replies=replies,
            loading_msg=loading_msg,
        )
        self.messages[mid] = message
        return message


class FakeInteraction:
    def __init__(self, user_id: int = ALICE_ID) -> None:
        self.user = SimpleNamespace(id=user_id)
        self.loading_msg = FakeLoadingMessage()
        self.sent: list[dict] = []

        async def send_message(*args, **kwargs) -> None:
            self.sent.append(kwargs)

        self.response = SimpleNamespace(send_message=send_message)

    async def original_response(self) -> FakeLoadingMessage:
        return self.loading_msg


def _wire(monkeypatch, config: dict, outcomes: list) -> tuple[Chat, list[tuple]]:
    monkeypatch.setattr("cogs.chat.get_config", lambda: config)
    calls = _fake_generate(monkeypatch, outcomes)
    cog = Chat(SimpleNamespace(user=BOT_USER))
    return cog, calls


def test_mention_reply_uses_the_reply_chain(monkeypatch) -> None:
    cog, calls = _wire(monkeypatch, _config(max_messages=2), ["12"])
    channel = ChatChannel()
    channel.post(1, ALICE_ID, f"<@{BOT_USER.id}> what is 2+2")
    channel.post(2, BOT_USER.id, "4", reply_to=1)
    channel.post(3, ALICE_ID, f"<@{BOT_USER.id}> and 3+3?", reply_to=2)
    channel.post(4, BOT_USER.id, "6", reply_to=3)
    inbound = channel.post(5, ALICE_ID, f"<@{BOT_USER.id}> now multiply them", reply_to=4)

    asyncio.run(cog.on_message(inbound))

    assert calls == [(GEMINI_MODEL, [Turn("user", "and 3+3?"), Turn("model", "6")], "now multiply them")]
    assert inbound.replies[0]["embed"].title == "⌛ Generating response..."
    final_edit = inbound.loading_msg.edits[-1]
    assert final_edit["content"] == "12"
    assert final_edit["embeds"][0].footer.text.startswith("Reply thread history was too long")


def test_mention_without_reply_has_no_marker(monkeypatch) -> None:
    cog, calls = _wire(monkeypatch, _config(), ["hello!"])
    inbound = ChatChannel().post(1, ALICE_ID, f"<@{BOT_USER.id}> hi there")

    asyncio.run(cog.on_message(inbound))

    assert calls == [(GEMINI_MODEL, [], "hi there")]
    assert inbound.loading_msg.edits == [{"content": "hello!", "embeds": []}]


def test_unauthorized_author_gets_no_reply(monkeypatch) -> None:
    config = _config(permissions=_permissions(blocked_ids=[ALICE_ID]))
    cog, calls = _wire(monkeypatch, config, ["never"])
    inbound = ChatChannel().post(1, ALICE_ID, f"<@{BOT_USER.id}> hi")

    asyncio.run(cog.on_message(inbound))

    assert calls == []
    assert inbound.replies == []


def test_message_without_mention_is_ignored(monkeypatch) -> None:
    cog, calls = _wire(monkeypatch, _config(), ["never"])
    inbound = ChatChannel().post(1, ALICE_ID, "just chatting")

    asyncio.run(cog.on_message(inbound))

    assert calls == []
    assert inbound.replies == []


def test_attachment_download_failure_is_shown_on_the_loading_message(monkeypatch) -> None:
    cog, calls = _wire(monkeypatch, _config(), ["never"])

    async def failing_get(url):
        raise httpx.ConnectError("connection refused")

    monkeypatch.setattr("cogs.chat.httpx_client", SimpleNamespace(get=failing_get))
    inbound = ChatChannel().post(1, ALICE_ID, f"<@{BOT_USER.id}> read this")
    inbound.attachments = [SimpleNamespace(content_type="text/plain", url="https://cdn.example.com/notes.txt")]

    asyncio.run(cog.on_message(inbound))

    assert calls == []
    assert inbound.loading_msg.edits[-1]["embeds"][0].title == "⚠️ An Error Occurred"


def test_slash_command_answer_carries_slash_marker(monkeypatch) -> None:
    cog, calls = _wire(monkeypatch, _config(), ["sure"])
    interaction = FakeInteraction()

    asyncio.run(cog.answer_interaction(interaction, "tell me a joke"))

    assert calls == [(GEMINI_MODEL, [], "tell me a joke")]
    assert interaction.sent[0]["embed"].title == "⌛ Generating response..."
    final_edit = interaction.loading_msg.edits[-1]
    assert final_edit["content"] == "sure"
    assert [embed.footer.text for embed in final_edit["embeds"]] == [MARKER_FOOTERS[DeletionMarker.SLASH_COMMAND]]


def test_context_menu_answer_quotes_the_selected_message(monkeypatch) -> None:
    chat_cog, calls = _wire(monkeypatch, _config(), ["Yes."])
    added: list = []
    bot = SimpleNamespace(tree=SimpleNamespace(add_command=added.append), get_cog=lambda name: chat_cog)
    ask_cog = Ask(bot)
    interaction = FakeInteraction()
    quoted = SimpleNamespace(author="bob", content="is the sky blue?")

    asyncio.run(ask_cog.ask_message(interaction, quoted))

    assert added == [ask_cog.ask_menu]
    assert calls == [(GEMINI_MODEL, [], "is the sky blue?")]
    final_edit = interaction.loading_msg.edits[-1]
    assert [embed.footer.text for embed in final_edit["embeds"]] == ["Response to message by bob\n\nis the sky blue?"]


def test_invalid_api_key_stops_the_interaction(monkeypatch) -> None:
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    cog, calls = _wire(monkeypatch, _config(providers={"gemini": {"api_key": ""}}), ["never"])
    interaction = FakeInteraction()

    asyncio.run(cog.answer_interaction(interaction, "hi"))

    assert calls == []
    assert interaction.sent[0]["embed"].title == "⚠️ Invalid API Key"


def test_admin_model_switch_changes_the_chat_model(monkeypatch) -> None:
    config = _config()
    monkeypatch.setattr("cogs.admin.get_config", lambda: config)
    chat_cog = _chat_cog()
    admin_cog = Admin(SimpleNamespace(get_cog=lambda name: chat_cog))

    denied = asyncio.run(admin_cog._switch_model_internal("gemini/gemini-1.5-flash-latest", 7))
    unknown = asyncio.run(admin_cog._switch_model_internal("gemini/unknown", ALICE_ID))
    assert chat_cog.curr_model == GEMINI_MODEL

    switched = asyncio.run(admin_cog._switch_model_internal("gemini/gemini-1.5-flash-latest", ALICE_ID))

    assert denied == "You don't have permission to change the model."
    assert unknown == "Model `gemini/unknown` not found in configuration."
    assert switched == "Model switched to: `gemini/gemini-1.5-flash-latest`"
    assert chat_cog.curr_model == "gemini/gemini-1.5-flash-latest"
