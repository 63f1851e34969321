import asyncio
import re

import pytest

from conftest import FakeLLM
from desci.analysis import (
    AnalysisDispatcher, PaperAnalyzer, build_sample, find_section, split_into_chunks,
)
from desci.models import PaperStatus


def rejoin(text, chunks):
    """用原文中块边界处的分隔符重新拼接"""
    boundary = iter(_boundary_separators(text, chunks))
    out = chunks[0]
    for chunk in chunks[1:]:
        out += next(boundary) + chunk
    return out


def _boundary_separators(text, chunks):
    position = 0
    result = []
    for chunk in chunks:
        position = text.index(chunk, position) + len(chunk)
        match = re.match(r"\n\n+", text[position:])
        if match:
            result.append(match.group(0))
            position += len(match.group(0))
    return result


class TestChunking:

    def test_empty_text(self):
        assert split_into_chunks("") == []

    def test_short_text_is_single_chunk(self):
        text = "Intro\n\nBody\n\n\nEnd"
        assert split_into_chunks(text, 100) == [text]

    def test_chunks_respect_max_size(self):
        paragraphs = [f"Paragraph {i} " + "x" * 30 for i in range(20)]
        text = "\n\n".join(paragraphs)

        chunks = split_into_chunks(text, 120)

        assert len(chunks) > 1
        assert all(len(c) <= 120 for c in chunks)
        assert "\n\n".join(chunks) == text

    def test_oversize_paragraph_gets_own_chunk(self):
        big = "y" * 500
        text = f"small one\n\n{big}\n\nsmall two"

        chunks = split_into_chunks(text, 100)

        assert chunks == ["small one", big, "small two"]

    def test_irregular_separators_are_preserved(self):
        text = "alpha " * 10 + "\n\n\n\n" + "beta " * 10 + "\n\n" + "gamma " * 10 + "\n\n\n" + "delta"

        chunks = split_into_chunks(text, 80)

        assert rejoin(text, chunks) == text
        for chunk in chunks:
            assert len(chunk) <= 80 or "\n\n" not in chunk

    def test_leading_and_trailing_separators_stay_within_limit(self):
        text = "\n\n" + "a" * 99 + "\n\n" + "b" * 10 + "\n\n"

        chunks = split_into_chunks(text, 100)

        assert chunks == ["a" * 99, "b" * 10 + "\n\n"]
        assert all(len(c) <= 100 for c in chunks)

    def test_single_newlines_do_not_split(self):
        text = "line one\nline two\nline three"
        assert split_into_chunks(text, 10) == [text]

    def test_find_sections(self):
        chunks = ["Abstract", "1. Introduction here", "Methods", "Discussion", "Conclusion and summary", "Refs"]

        assert find_section(chunks, ("introduction", "background")) == "1. Introduction here"
        assert find_section(chunks, ("conclusion", "discussion", "summary"), last=True) == "Conclusion and summary"
        assert find_section(chunks, ("appendix",)) == ""

    def test_build_sample_skips_missing_sections(self):
        sample = build_sample("T", "A", "", "the end")

        assert sample.startswith("Title: T\n\nAbstract: A")
        assert "Introduction excerpt" not in sample
        assert "Conclusion excerpt:\nthe end" in sample


def setup_paper(repository, content_store, body=None):
    author = repository.create_user("alice", "wallet_auth", wallet_address="0xAA")
    cid = "QmMissing"
    if body is not None:
        cid = content_store.upload_bytes(body.encode())
    paper = repository.create_paper("A Paper", "The abstract of the paper.", author.id, cid)
    return author, paper


def long_body():
    return "\n\n".join([
        "Abstract text " * 5,
        "1 Introduction " + "intro words " * 8,
        "2 Methods " + "method words " * 8,
        "3 Results " + "result words " * 8,
        "4 Conclusion " + "closing words " * 8,
    ])


class TestPaperAnalyzer:

    def test_single_chunk_high_rating_verifies(self, repository, content_store):
        llm = FakeLLM(8)
        author, paper = setup_paper(repository, content_store, "Short body.")
        analyzer = PaperAnalyzer(repository, content_store, llm)

        analysis = asyncio.run(analyzer.analyze(paper.id))

        assert analysis.quality_rating == 8
        assert paper.status == PaperStatus.VERIFIED
        assert paper.ai_verified is True
        assert author.token_balance == 3 + 10
        assert repository.get_user_tokens(author.id)[0].reason == "High-quality paper verified by AI"
        assert len(llm.calls) == 1
        assert llm.calls[0]["response_format"] == {"type": "json_object"}
        assert "Short body." in llm.calls[0]["messages"][1]["content"]

    def test_single_chunk_rating_six_does_not_verify(self, repository, content_store):
        author, paper = setup_paper(repository, content_store, "Short body.")
        analyzer = PaperAnalyzer(repository, content_store, FakeLLM(6))

        analysis = asyncio.run(analyzer.analyze(paper.id))

        assert analysis.quality_rating == 6
        assert paper.status == PaperStatus.SUBMITTED
        assert paper.ai_verified is False
        assert author.token_balance == 3

    def test_sampled_rating_six_verifies(self, repository, content_store):
        llm = FakeLLM(2, 6)
        author, paper = setup_paper(repository, content_store, long_body())
        analyzer = PaperAnalyzer(repository, content_store, llm, max_chunk_size=150)

        analysis = asyncio.run(analyzer.analyze(paper.id))

        assert analysis.quality_rating == 6
        assert paper.status == PaperStatus.VERIFIED
        assert paper.ai_verified is True
        assert author.token_balance == 13

        assert len(llm.calls) == 2
        baseline = llm.calls[0]["messages"][1]["content"]
        sample = llm.calls[1]["messages"][1]["content"]
        assert "just the abstract" in baseline
        assert "Introduction excerpt:\n1 Introduction" in sample
        assert "Conclusion excerpt:\n4 Conclusion" in sample
        assert "2 Methods" not in sample

    def test_sampled_rating_five_does_not_verify(self, repository, content_store):
        author, paper = setup_paper(repository, content_store, long_body())
        analyzer = PaperAnalyzer(repository, content_store, FakeLLM(9, 5), max_chunk_size=150)

        asyncio.run(analyzer.analyze(paper.id))

        assert paper.status == PaperStatus.SUBMITTED
        assert author.token_balance == 3

    def test_retrieval_failure_falls_back_to_abstract(self, repository, content_store):
        llm = FakeLLM(4)
        _, paper = setup_paper(repository, content_store)
        analyzer = PaperAnalyzer(repository, content_store, llm)

        analysis = asyncio.run(analyzer.analyze(paper.id))

        assert analysis is not None
        assert "The abstract of the paper." in llm.calls[0]["messages"][1]["content"]

    def test_llm_error_returns_none(self, repository, content_store):
        _, paper = setup_paper(repository, content_store, "Body.")
        analyzer = PaperAnalyzer(repository, content_store, FakeLLM(error=RuntimeError("rate limited")))

        assert asyncio.run(analyzer.analyze(paper.id)) is None
        assert paper.ai_analysis is None

    def test_out_of_range_rating_returns_none(self, repository, content_store):
        author, paper = setup_paper(repository, content_store, "Body.")
        analyzer = PaperAnalyzer(repository, content_store, FakeLLM(42))

        assert asyncio.run(analyzer.analyze(paper.id)) is None
        assert author.token_balance == 3

    def test_without_client_returns_none(self, repository, content_store):
        _, paper = setup_paper(repository, content_store, "Body.")
        analyzer = PaperAnalyzer(repository, content_store, None)

        assert asyncio.run(analyzer.analyze(paper.id)) is None

    def test_missing_paper_returns_none(self, repository, content_store):
        analyzer = PaperAnalyzer(repository, content_store, FakeLLM(9))
        assert asyncio.run(analyzer.analyze(404)) is None


class TestAnalysisDispatcher:

    def test_join_waits_for_dispatched_tasks(self):
        finished = []

        async def runner(paper_id):
            await asyncio.sleep(0.01)
            finished.append(paper_id)

        async def scenario():
            dispatcher = AnalysisDispatcher(runner)
            dispatcher.dispatch(1)
            dispatcher.dispatch(2)
            assert len(dispatcher.pending) == 2
            await dispatcher.join()
            return dispatcher

        dispatcher = asyncio.run(scenario())

        assert sorted(finished) == [1, 2]
        assert dispatcher.pending == []

    def test_failing_task_does_not_break_join(self):
        async def runner(paper_id):
            raise RuntimeError("boom")

        async def scenario():
            dispatcher = AnalysisDispatcher(runner)
            task = dispatcher.dispatch(7)
            await dispatcher.join()
            return task

        task = asyncio.run(scenario())
        assert isinstance(task.exception(), RuntimeError)

    def test_dispatch_does_not_block(self):
        async def scenario():
            gate = asyncio.Event()

            async def runner(paper_id):
                await gate.wait()

            dispatcher = AnalysisDispatcher(runner)
            task = dispatcher.dispatch(1)
            assert not task.done()
            gate.set()
            await dispatcher.join()
            return task.done()

        assert asyncio.run(scenario()) is True


@pytest.mark.parametrize("size", [20, 50, 200])
def test_chunk_sizes_bounded(size):
    text = "\n\n".join("w" * n for n in (5, 15, 18, 3, 40, 7, 9))
    chunks = split_into_chunks(text, size)
    assert "\n\n".join(chunks) == text
    for chunk in chunks:
        assert len(chunk) <= size or "\n\n" not in chunk
