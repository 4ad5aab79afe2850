import asyncio

from horizon.pipelines.embedding import chunked, generate_embeddings, truncate_text
from tests.support import FakeEmbedder, database, load_signals, load_status, seed_project


def test_truncate_text():
    assert truncate_text("abcdef", 4) == "abcd"
    assert truncate_text("abc", 4) == "abc"


def test_chunked():
    assert chunked([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]


def _run_phase(factory, project_id, embedder, **kwargs):
    async def go():
        async with factory() as session:
            return await generate_embeddings(
                session,
                project_id,
                embedder,
                concurrency=kwargs.get("concurrency", 2),
                max_text_length=kwargs.get("max_text_length", 512),
                commit_interval=kwargs.get("commit_interval", 2),
            )
    return go()


def test_embeds_only_signals_without_vectors(db_url):
    embedder = FakeEmbedder({"new one": [0.0, 1.0], "new two": [1.0, 1.0]})

    async def scenario():
        async with database(db_url) as factory:
            project_id, ids = await seed_project(
                factory,
                ["done", "new one", "new two"],
                signal_fields=[{"embedding": [1.0, 0.0]}, {}, {}],
                embeddings_complete=1,
            )
            embedded = await _run_phase(factory, project_id, embedder)
            return embedded, ids, await load_signals(factory, project_id), await load_status(factory, project_id)

    embedded, (done, one, two), signals, status = asyncio.run(scenario())

    assert embedded == 2
    assert sorted(embedder.calls) == ["new one", "new two"]
    assert list(signals[done].embedding) == [1.0, 0.0]
    assert list(signals[one].embedding) == [0.0, 1.0]
    assert status.embeddings_complete == 3


def test_long_text_is_truncated(db_url):
    embedder = FakeEmbedder()
    long_text = "x" * 600

    async def scenario():
        async with database(db_url) as factory:
            project_id, _ = await seed_project(factory, [long_text])
            await _run_phase(factory, project_id, embedder, max_text_length=512)

    asyncio.run(scenario())

    assert embedder.calls == ["x" * 512]


def test_failed_embedding_stays_null_but_counts(db_url):
    embedder = FakeEmbedder(fail=["broken"], raise_on=["crash"])

    async def scenario():
        async with database(db_url) as factory:
            project_id, ids = await seed_project(factory, ["ok", "broken", "crash"])
            embedded = await _run_phase(factory, project_id, embedder, concurrency=5)
            return embedded, ids, await load_signals(factory, project_id), await load_status(factory, project_id)

    embedded, (ok, broken, crash), signals, status = asyncio.run(scenario())

    assert embedded == 1
    assert signals[ok].embedding is not None
    assert signals[broken].embedding is None
    assert signals[crash].embedding is None
    assert status.embeddings_complete == 3


def test_failed_embedding_is_retried_on_next_run(db_url):
    embedder = FakeEmbedder(fail=["flaky"])

    async def scenario():
        async with database(db_url) as factory:
            project_id, ids = await seed_project(factory, ["steady", "flaky"])
            await _run_phase(factory, project_id, embedder)
            embedder.fail.clear()
            embedder.calls.clear()
            second = await _run_phase(factory, project_id, embedder)
            return second, ids, await load_signals(factory, project_id), await load_status(factory, project_id)

    second, (steady, flaky), signals, status = asyncio.run(scenario())

    assert second == 1
    assert embedder.calls == ["flaky"]
    assert signals[flaky].embedding is not None
    assert status.embeddings_complete == 2


def test_nothing_to_do(db_url):
    embedder = FakeEmbedder()

    async def scenario():
        async with database(db_url) as factory:
            project_id, _ = await seed_project(factory, ["a"], signal_fields=[{"embedding": [1.0, 0.0]}])
            return await _run_phase(factory, project_id, embedder)

    assert asyncio.run(scenario()) == 0
    assert embedder.calls == []
