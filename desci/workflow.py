import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from pydantic import ValidationError

from .analysis import AnalysisDispatcher, PaperAnalyzer
from .auth import IdentityResolver, SignatureVerifier, submission_message
from .errors import (
    NotFound, SelfReviewRejected, SignatureRejected, UpstreamError, ValidationFailed,
)
from .ipfs import ContentStoreClient
from .models import (
    AIAnalysis, Paper, PaperStatus, PaperSubmission, PaperWithAuthor, Review, ReviewSubmission,
)
from .repository import PaperRepository

logger = logging.getLogger(__name__)

REVIEW_REASON = "Submitted peer review"


def _field_errors(error: ValidationError):
    return [
        {"field": ".".join(str(p) for p in e["loc"]), "message": e["msg"]}
        for e in error.errors()
    ]


class PaperWorkflow:
    """投稿、评审与 AI 分析的请求级流程"""

    def __init__(self, repository: PaperRepository, identity: IdentityResolver,
                 verifier: SignatureVerifier, content_store: ContentStoreClient,
                 analyzer: PaperAnalyzer, review_bonus: int = 5,
                 min_review_length: int = 10, require_signature: bool = False):
        self.repository = repository
        self.identity = identity
        self.verifier = verifier
        self.content_store = content_store
        self.analyzer = analyzer
        self.dispatcher = AnalysisDispatcher(self.analyze_and_record)
        self.review_bonus = review_bonus
        self.min_review_length = min_review_length
        self.require_signature = require_signature

    # 论文
    def view_paper(self, paper_id: int) -> PaperWithAuthor:
        paper = self.repository.get_paper_with_author(paper_id)
        if paper is None:
            raise NotFound("Paper not found")
        self.repository.increment_paper_views(paper_id)
        return paper

    async def submit_paper(self, payload: Dict[str, Any]) -> Paper:
        """保存论文并在后台启动 AI 分析，不等待分析结果"""
        try:
            submission = PaperSubmission.model_validate(payload)
        except ValidationError as e:
            raise ValidationFailed("Invalid paper data", _field_errors(e)) from e

        if submission.signature:
            message = submission_message(submission.title, submission.ipfs_cid)
            if not self.verifier.verify_signature(message, submission.signature, submission.wallet_address):
                raise SignatureRejected("Invalid signature")
        elif self.require_signature:
            raise SignatureRejected("Signature is required")

        user = self.identity.resolve(submission.wallet_address)

        paper = self.repository.create_paper(
            title=submission.title,
            abstract=submission.abstract,
            author_id=user.id,
            ipfs_cid=submission.ipfs_cid,
            metadata_hash=submission.metadata_hash,
            tags=submission.tags or [],
        )
        logger.info(f"Paper {paper.id} submitted by user {user.id}")

        self.dispatcher.dispatch(paper.id)
        return paper

    async def analyze_and_record(self, paper_id: int) -> Optional[AIAnalysis]:
        analysis = await self.analyzer.analyze(paper_id)
        if analysis is not None:
            self.repository.update_paper_ai_analysis(paper_id, analysis)
        return analysis

    async def reanalyze(self, paper_id: int) -> Tuple[AIAnalysis, PaperStatus]:
        """手动重新分析，等待结果"""
        if self.repository.get_paper(paper_id) is None:
            raise NotFound("Paper not found")

        analysis = await self.analyze_and_record(paper_id)
        if analysis is None:
            raise UpstreamError("AI analysis failed")
        return analysis, self.repository.get_paper(paper_id).status

    # 评审
    async def submit_review(self, paper_id: int, payload: Dict[str, Any]) -> Review:
        paper = self.repository.get_paper(paper_id)
        if paper is None:
            raise NotFound("Paper not found")

        wallet_address = payload.get("walletAddress")
        if not wallet_address:
            raise ValidationFailed("Wallet address is required")
        if not isinstance(wallet_address, str):
            raise ValidationFailed("Invalid review data", [{
                "field": "walletAddress",
                "message": "Wallet address must be a string",
            }])

        user = self.identity.lookup(wallet_address)
        if user is None:
            raise NotFound("User not found")

        if paper.author_id == user.id:
            raise SelfReviewRejected("You cannot review your own paper")

        try:
            submission = ReviewSubmission.model_validate(payload)
        except ValidationError as e:
            raise ValidationFailed("Invalid review data", _field_errors(e)) from e
        if len(submission.content) < self.min_review_length:
            raise ValidationFailed("Invalid review data", [{
                "field": "content",
                "message": f"Review must be at least {self.min_review_length} characters long",
            }])

        # 评审内容先固定到 IPFS，失败则整个评审失败
        review_data = {
            "paperId": paper_id,
            "reviewerId": user.id,
            "content": submission.content,
            "rating": submission.rating,
            "timestamp": datetime.now().isoformat(),
        }
        ipfs_cid = await asyncio.to_thread(self.content_store.upload_json, review_data)

        with self.repository.transaction() as repo:
            review = repo.create_review(
                paper_id=paper_id,
                reviewer_id=user.id,
                content=submission.content,
                rating=submission.rating,
                ipfs_cid=ipfs_cid,
                tx_hash="",
            )
            repo.award_tokens(user.id, self.review_bonus, REVIEW_REASON, paper_id=paper_id)
        logger.info(f"Review {review.id} for paper {paper_id} created by user {user.id}")
        return review
