import asyncio
import json
import logging
import re
from typing import Awaitable, Callable, List, Optional, Set

from openai import AsyncOpenAI
from pydantic import ValidationError

from .ipfs import ContentStoreClient
from .models import AIAnalysis, Paper, PaperStatus
from .repository import PaperRepository

logger = logging.getLogger(__name__)

MAX_CHUNK_SIZE = 10000
VERIFICATION_REASON = "High-quality paper verified by AI"

_PARAGRAPH_BREAK = re.compile(r"(\n\n+)")

_ANALYSIS_FIELDS = (
    "Respond with a JSON object with these keys: "
    "plagiarismCheck, referenceVerification, contentSummary, qualityRating"
)

FULL_PAPER_PROMPT = (
    "You are an AI research assistant specialized in analyzing scientific papers. "
    "Analyze the given research paper and provide the following:\n"
    "1. Plagiarism Check: whether the content appears original or may contain plagiarized sections\n"
    "2. Reference Verification: whether the paper cites and references its sources properly\n"
    "3. Content Summary: a concise summary of the key findings and contributions\n"
    "4. Quality Rating: the overall quality of the paper as an integer from 1 to 10\n\n"
    + _ANALYSIS_FIELDS
)

SAMPLE_PROMPT = (
    "You are an AI research assistant specialized in analyzing scientific papers. "
    "Analyze the given sample of a research paper and provide the following:\n"
    "1. Plagiarism Check: whether the content appears original or may contain plagiarized sections\n"
    "2. Reference Verification: whether the paper cites and references its sources properly\n"
    "3. Content Summary: a concise summary of the key findings and contributions\n"
    "4. Quality Rating: the overall quality of the paper as an integer from 1 to 10, "
    "based on the sample provided\n\n"
    + _ANALYSIS_FIELDS
)

INTRODUCTION_MARKERS = ("introduction", "background")
CONCLUSION_MARKERS = ("conclusion", "discussion", "summary")


def split_into_chunks(text: str, max_size: int = MAX_CHUNK_SIZE) -> List[str]:
    """
    按段落把文本切成连续的块

    段落之间以两个及以上换行分隔，块内保留原始分隔符；单个段落超过
    max_size 时独占一块。用块边界处的分隔符把各块拼接即可还原原文。
    """
    if not text:
        return []

    parts = _PARAGRAPH_BREAK.split(text)
    chunks: List[str] = []
    current = parts[0]
    for i in range(1, len(parts), 2):
        separator, paragraph = parts[i], parts[i + 1]
        if len(current) + len(separator) + len(paragraph) > max_size:
            # 开头或结尾的分隔符也算作块边界
            if current:
                chunks.append(current)
            current = paragraph
        else:
            current += separator + paragraph
    if current or not chunks:
        chunks.append(current)
    return chunks


def find_section(chunks: List[str], markers, last: bool = False) -> str:
    """找到第一个（或最后一个）包含任一关键词的块"""
    ordered = reversed(chunks) if last else chunks
    for chunk in ordered:
        lowered = chunk.lower()
        if any(marker in lowered for marker in markers):
            return chunk
    return ""


def build_sample(title: str, abstract: str, introduction: str, conclusion: str) -> str:
    parts = [f"Title: {title}", f"Abstract: {abstract}"]
    if introduction:
        parts.append(f"Introduction excerpt:\n{introduction}")
    if conclusion:
        parts.append(f"Conclusion excerpt:\n{conclusion}")
    parts.append("Note: This is a sample of a large paper. "
                 "The full text was too large to analyze in one request.")
    return "\n\n".join(parts)


class PaperAnalyzer:
    """调用语言模型评估论文质量，高分论文自动验证并奖励作者"""

    def __init__(self, repository: PaperRepository, content_store: ContentStoreClient,
                 client: Optional[AsyncOpenAI], model: str = "gpt-4o",
                 max_chunk_size: int = MAX_CHUNK_SIZE,
                 single_chunk_threshold: int = 7, sampled_threshold: int = 6,
                 verification_bonus: int = 10):
        self.repository = repository
        self.content_store = content_store
        self.client = client
        self.model = model
        self.max_chunk_size = max_chunk_size
        self.single_chunk_threshold = single_chunk_threshold
        self.sampled_threshold = sampled_threshold
        self.verification_bonus = verification_bonus

    async def analyze(self, paper_id: int) -> Optional[AIAnalysis]:
        """分析论文，失败时返回 None（可稍后重试）"""
        try:
            if self.client is None:
                logger.warning("OpenAI API key not configured, skipping AI analysis")
                return None

            paper = self.repository.get_paper(paper_id)
            if paper is None:
                logger.warning(f"Paper {paper_id} not found, skipping AI analysis")
                return None

            content = await self._load_content(paper)
            chunks = split_into_chunks(content, self.max_chunk_size)

            if len(chunks) <= 1:
                analysis = await self._request(
                    FULL_PAPER_PROMPT, f"Title: {paper.title}\n\nContent: {content}"
                )
                self._promote_if_qualified(paper, analysis, self.single_chunk_threshold)
                return analysis

            logger.info(f"Paper {paper_id} is large, splitting into {len(chunks)} chunks for analysis")
            baseline = await self._request(
                FULL_PAPER_PROMPT,
                f"Title: {paper.title}\n\nContent: {paper.abstract}\n\n"
                "Note: This is just the abstract. The full paper is very large and being analyzed separately.",
            )
            logger.debug(f"Abstract-only baseline for paper {paper_id}: rating {baseline.quality_rating}")

            sample = build_sample(
                paper.title,
                paper.abstract,
                find_section(chunks, INTRODUCTION_MARKERS),
                find_section(chunks, CONCLUSION_MARKERS, last=True),
            )
            analysis = await self._request(SAMPLE_PROMPT, sample)
            self._promote_if_qualified(paper, analysis, self.sampled_threshold)
            return analysis
        except Exception as e:
            logger.error(f"Error analyzing paper {paper_id}: {e}")
            return None

    async def _load_content(self, paper: Paper) -> str:
        # 读取失败时退回到摘要
        try:
            data = await asyncio.to_thread(self.content_store.retrieve, paper.ipfs_cid)
        except Exception as e:
            logger.error(f"Error retrieving paper content for {paper.ipfs_cid}: {e}")
            data = None
        if not data:
            return paper.abstract
        return data.decode("utf-8", errors="replace")

    async def _request(self, system_prompt: str, user_content: str) -> AIAnalysis:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_content},
            ],
            response_format={"type": "json_object"},
        )
        raw = response.choices[0].message.content
        try:
            return AIAnalysis.model_validate(json.loads(raw))
        except (TypeError, json.JSONDecodeError, ValidationError) as e:
            raise ValueError(f"Malformed analysis response: {e}") from e

    def _promote_if_qualified(self, paper: Paper, analysis: AIAnalysis, threshold: int) -> bool:
        if analysis.quality_rating < threshold:
            return False
        with self.repository.transaction() as repo:
            repo.update_paper_status(paper.id, PaperStatus.VERIFIED)
            repo.update_paper_ai_verified(paper.id, True)
            repo.award_tokens(paper.author_id, self.verification_bonus, VERIFICATION_REASON)
        logger.info(f"Paper {paper.id} verified by AI with rating {analysis.quality_rating}")
        return True


class AnalysisDispatcher:
    """
    后台分析任务

    dispatch 不等待任务完成；join 等待所有未完成的任务。
    """

    def __init__(self, runner: Callable[[int], Awaitable[object]]):
        self.runner = runner
        self._tasks: Set[asyncio.Task] = set()

    def dispatch(self, paper_id: int) -> asyncio.Task:
        task = asyncio.create_task(self.runner(paper_id), name=f"analyze-paper-{paper_id}")
        self._tasks.add(task)
        task.add_done_callback(self._finished)
        return task

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"AI analysis error in {task.get_name()}: {error}")

    @property
    def pending(self) -> List[asyncio.Task]:
        return [t for t in self._tasks if not t.done()]

    async def join(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
