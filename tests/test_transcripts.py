import pytest

from src.chatrelay.transcripts import (
    DuplicateMessageIndex,
    InMemoryTranscriptStore,
    SqliteTranscriptStore,
    TranscriptWriter,
    build_history,
)
from src.chatrelay.types import Conversation, TranscriptRecord


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        yield InMemoryTranscriptStore()
        return
    sqlite_store = SqliteTranscriptStore(str(tmp_path / "db" / "transcripts.sqlite3"))
    yield sqlite_store
    sqlite_store.close()


def _conversation(conversation_id: str = "conv-1") -> Conversation:
    return Conversation(
        conversation_id=conversation_id,
        user_id="user-1",
        created_at=1_700_000_000,
        last_message_at=1_700_000_000,
        expires_at=1_702_592_000,
    )


@pytest.mark.anyio
async def test_writer_assigns_consecutive_indexes(store) -> None:
    await store.put_conversation(_conversation())
    writer = TranscriptWriter(store)

    records = [
        await writer.write("conv-1", query=f"q{i}", response=f"r{i}", model="gpt-4o", cost=0.001)
        for i in range(3)
    ]

    assert [record.message_index for record in records] == [0, 1, 2]
    latest = await store.latest_messages("conv-1", 5)
    assert [record.message_index for record in latest] == [2, 1, 0]


@pytest.mark.anyio
async def test_writer_keeps_citations_and_cost(store) -> None:
    await store.put_conversation(_conversation())
    writer = TranscriptWriter(store)

    await writer.write(
        "conv-1",
        query="who",
        response="them",
        model="sonar",
        cost=0.00500002,
        citations=["https://a.example"],
    )

    (record,) = await store.latest_messages("conv-1", 1)
    assert record.citations == ["https://a.example"]
    assert record.cost == pytest.approx(0.00500002)
    assert record.model == "sonar"


@pytest.mark.anyio
async def test_writer_updates_last_message_time(store) -> None:
    await store.put_conversation(_conversation())

    await TranscriptWriter(store).write("conv-1", query="q", response="r", model="gpt-4o", cost=0.0)

    conversation = await store.get_conversation("conv-1")
    assert conversation is not None
    assert conversation.last_message_at > 1_700_000_000


@pytest.mark.anyio
async def test_store_rejects_duplicate_index(store) -> None:
    record = TranscriptRecord(
        conversation_id="conv-1", message_index=0, query="q", response="r", model="gpt-4o", cost=0.0
    )
    await store.put_message(record)

    with pytest.raises(DuplicateMessageIndex):
        await store.put_message(record.model_copy(update={"response": "other"}))

    (kept,) = await store.latest_messages("conv-1", 5)
    assert kept.response == "r"


@pytest.mark.anyio
async def test_writer_retries_when_index_is_taken() -> None:
    class RacingStore(InMemoryTranscriptStore):
        """Another exchange lands index 0 between our read and our write."""

        def __init__(self) -> None:
            super().__init__()
            self.raced = False

        async def put_message(self, record: TranscriptRecord) -> None:
            if not self.raced:
                self.raced = True
                await super().put_message(
                    record.model_copy(update={"query": "other exchange"})
                )
            await super().put_message(record)

    store = RacingStore()

    record = await TranscriptWriter(store).write(
        "conv-1", query="mine", response="r", model="gpt-4o", cost=0.0
    )

    assert record.message_index == 1
    latest = await store.latest_messages("conv-1", 5)
    assert [(item.message_index, item.query) for item in latest] == [(1, "mine"), (0, "other exchange")]


@pytest.mark.anyio
async def test_writer_gives_up_after_repeated_conflicts() -> None:
    class AlwaysTakenStore(InMemoryTranscriptStore):
        def __init__(self) -> None:
            super().__init__()
            self.attempts = 0

        async def put_message(self, record: TranscriptRecord) -> None:
            self.attempts += 1
            raise DuplicateMessageIndex(f"index {record.message_index} taken")

    store = AlwaysTakenStore()

    with pytest.raises(DuplicateMessageIndex):
        await TranscriptWriter(store).write(
            "conv-1", query="mine", response="r", model="gpt-4o", cost=0.0
        )

    assert store.attempts == 3


@pytest.mark.anyio
async def test_update_conversation_sets_title(store) -> None:
    await store.put_conversation(_conversation())

    await store.update_conversation("conv-1", title="Weekend Plans")

    conversation = await store.get_conversation("conv-1")
    assert conversation is not None
    assert conversation.title == "Weekend Plans"


@pytest.mark.anyio
async def test_build_history_orders_oldest_first_and_limits(store) -> None:
    writer = TranscriptWriter(store)
    for i in range(7):
        await writer.write("conv-1", query=f"q{i}", response=f"r{i}", model="gpt-4o", cost=0.0)

    history = await build_history(store, "conv-1", "next question", limit=5)

    assert [(message.role, message.content) for message in history] == [
        ("user", "q2"),
        ("assistant", "r2"),
        ("user", "q3"),
        ("assistant", "r3"),
        ("user", "q4"),
        ("assistant", "r4"),
        ("user", "q5"),
        ("assistant", "r5"),
        ("user", "q6"),
        ("assistant", "r6"),
        ("user", "next question"),
    ]


@pytest.mark.anyio
async def test_build_history_skips_empty_responses(store) -> None:
    await TranscriptWriter(store).write("conv-1", query="q0", response="", model="gpt-4o", cost=0.0)

    history = await build_history(store, "conv-1", "again")

    assert [message.content for message in history] == ["q0", "again"]


@pytest.mark.anyio
async def test_build_history_for_new_conversation_is_just_the_prompt(store) -> None:
    history = await build_history(store, None, "hello")

    assert [(message.role, message.content) for message in history] == [("user", "hello")]
