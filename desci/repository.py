import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional

import numpy as np

from .models import (
    AIAnalysis, Paper, PaperStatus, PaperWithAuthor, Review, ReviewWithReviewer,
    Token, User, UserSummary,
)

logger = logging.getLogger(__name__)

SUBMISSION_REASON = "Paper submission"


class PaperRepository:
    """
    用户、论文、评审和代币账本的内存存储

    所有写操作都在同一把可重入锁下执行，复合写入（账本 + 余额 + 论文代币数）
    对其他操作是原子的。
    """

    def __init__(self, submission_bonus: int = 3):
        self.users: Dict[int, User] = {}
        self.papers: Dict[int, Paper] = {}
        self.reviews: Dict[int, Review] = {}
        self.tokens: Dict[int, Token] = {}

        self._user_id = 1
        self._paper_id = 1
        self._review_id = 1
        self._token_id = 1

        self.submission_bonus = submission_bonus
        self._lock = threading.RLock()

    @contextmanager
    def transaction(self) -> Iterator["PaperRepository"]:
        """在锁内执行一组操作"""
        with self._lock:
            yield self

    # 用户
    def get_user(self, user_id: int) -> Optional[User]:
        return self.users.get(user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        return next((u for u in self.users.values() if u.username == username), None)

    def get_user_by_wallet_address(self, wallet_address: str) -> Optional[User]:
        wallet = wallet_address.lower()
        return next(
            (u for u in self.users.values()
             if u.wallet_address and u.wallet_address.lower() == wallet),
            None,
        )

    def create_user(self, username: str, password: str, wallet_address: Optional[str] = None,
                    institution: Optional[str] = None, bio: Optional[str] = None,
                    profile_image: Optional[str] = None) -> User:
        with self._lock:
            user = User(
                id=self._user_id,
                username=username,
                password=password,
                wallet_address=wallet_address,
                institution=institution,
                bio=bio,
                profile_image=profile_image,
                token_balance=0,
            )
            self.users[user.id] = user
            self._user_id += 1
        return user

    # 论文
    def create_paper(self, title: str, abstract: str, author_id: int, ipfs_cid: str,
                     metadata_hash: Optional[str] = None,
                     tags: Optional[List[str]] = None) -> Paper:
        """保存论文并给作者发放投稿奖励"""
        with self._lock:
            paper = Paper(
                id=self._paper_id,
                title=title,
                abstract=abstract,
                author_id=author_id,
                ipfs_cid=ipfs_cid,
                metadata_hash=metadata_hash,
                tags=list(tags or []),
                created_at=datetime.now(),
            )
            self.papers[paper.id] = paper
            self._paper_id += 1
            self.award_tokens(author_id, self.submission_bonus, SUBMISSION_REASON)
        return paper

    def get_paper(self, paper_id: int) -> Optional[Paper]:
        return self.papers.get(paper_id)

    def _with_author(self, paper: Paper) -> PaperWithAuthor:
        author = UserSummary.from_user(self.users.get(paper.author_id), "Unknown Author")
        return PaperWithAuthor(
            **paper.model_dump(),
            author=author,
            review_count=self._review_count(paper.id),
        )

    def get_all_papers(self) -> List[PaperWithAuthor]:
        """按创建时间倒序返回带作者信息的论文列表"""
        with self._lock:
            papers = sorted(self.papers.values(), key=lambda p: (p.created_at, p.id), reverse=True)
            return [self._with_author(p) for p in papers]

    def get_paper_with_author(self, paper_id: int) -> Optional[PaperWithAuthor]:
        with self._lock:
            paper = self.papers.get(paper_id)
            if paper is None:
                return None
            return self._with_author(paper)

    def update_paper_status(self, paper_id: int, status: PaperStatus) -> bool:
        with self._lock:
            paper = self.papers.get(paper_id)
            if paper is None:
                return False
            paper.status = PaperStatus(status)
            return True

    def update_paper_ai_verified(self, paper_id: int, verified: bool) -> bool:
        with self._lock:
            paper = self.papers.get(paper_id)
            if paper is None:
                return False
            paper.ai_verified = verified
            return True

    def update_paper_ai_analysis(self, paper_id: int, analysis: Optional[AIAnalysis]) -> bool:
        with self._lock:
            paper = self.papers.get(paper_id)
            if paper is None:
                return False
            paper.ai_analysis = analysis
            return True

    def increment_paper_views(self, paper_id: int) -> bool:
        with self._lock:
            paper = self.papers.get(paper_id)
            if paper is None:
                return False
            paper.view_count += 1
            return True

    # 评审
    def create_review(self, paper_id: int, reviewer_id: int, content: str, rating: int,
                      ipfs_cid: Optional[str] = None, tx_hash: Optional[str] = None) -> Review:
        """保存评审；论文评审数达到 2 时状态变为 reviewed"""
        with self._lock:
            review = Review(
                id=self._review_id,
                paper_id=paper_id,
                reviewer_id=reviewer_id,
                content=content,
                rating=rating,
                ipfs_cid=ipfs_cid,
                tx_hash=tx_hash,
                created_at=datetime.now(),
            )
            self.reviews[review.id] = review
            self._review_id += 1

            paper = self.papers.get(paper_id)
            if paper is not None and self._review_count(paper_id) >= 2:
                paper.status = PaperStatus.REVIEWED
        return review

    def get_review(self, review_id: int) -> Optional[Review]:
        return self.reviews.get(review_id)

    def get_reviews_for_paper(self, paper_id: int) -> List[ReviewWithReviewer]:
        with self._lock:
            reviews = sorted(
                (r for r in self.reviews.values() if r.paper_id == paper_id),
                key=lambda r: (r.created_at, r.id),
                reverse=True,
            )
            return [
                ReviewWithReviewer(
                    **r.model_dump(),
                    reviewer=UserSummary.from_user(self.users.get(r.reviewer_id), "Unknown Reviewer"),
                )
                for r in reviews
            ]

    def _review_count(self, paper_id: int) -> int:
        return sum(1 for r in self.reviews.values() if r.paper_id == paper_id)

    # 代币
    def award_tokens(self, user_id: int, amount: int, reason: str,
                     paper_id: Optional[int] = None, tx_hash: Optional[str] = None) -> Token:
        """
        记录一笔代币奖励并更新用户余额

        指定 paper_id 时累加到该论文的代币数；否则评审相关的奖励
        归到该用户最近一次评审的论文。
        """
        with self._lock:
            token = Token(
                id=self._token_id,
                user_id=user_id,
                amount=amount,
                reason=reason,
                tx_hash=tx_hash,
                created_at=datetime.now(),
            )
            self.tokens[token.id] = token
            self._token_id += 1

            user = self.users.get(user_id)
            if user is not None:
                user.token_balance += amount
            else:
                logger.warning(f"Awarded {amount} tokens to unknown user {user_id}")

            if paper_id is None and "review" in reason.lower():
                paper_id = self._latest_reviewed_paper(user_id)
            paper = self.papers.get(paper_id) if paper_id is not None else None
            if paper is not None:
                paper.token_count += amount
        return token

    def _latest_reviewed_paper(self, reviewer_id: int) -> Optional[int]:
        reviewed = [r.paper_id for r in self.reviews.values() if r.reviewer_id == reviewer_id]
        return reviewed[-1] if reviewed else None

    def get_user_tokens(self, user_id: int) -> List[Token]:
        with self._lock:
            return sorted(
                (t for t in self.tokens.values() if t.user_id == user_id),
                key=lambda t: (t.created_at, t.id),
                reverse=True,
            )

    # 统计
    def get_token_stats(self) -> Dict:
        """获取代币系统统计信息"""
        with self._lock:
            balances = [u.token_balance for u in self.users.values()]
            return {
                'total_supply': int(sum(t.amount for t in self.tokens.values())),
                'total_users': len(self.users),
                'total_transactions': len(self.tokens),
                'average_balance': float(np.mean(balances)) if balances else 0.0,
                'max_balance': max(balances, default=0),
            }

    def get_paper_stats(self) -> Dict:
        """获取论文与评审统计信息"""
        with self._lock:
            ratings = [r.rating for r in self.reviews.values()]
            quality = [p.ai_analysis.quality_rating for p in self.papers.values() if p.ai_analysis]
            return {
                'total_papers': len(self.papers),
                'total_reviews': len(self.reviews),
                'status_counts': {
                    s.value: sum(1 for p in self.papers.values() if p.status == s)
                    for s in PaperStatus
                },
                'ai_verified': sum(1 for p in self.papers.values() if p.ai_verified),
                'average_rating': float(np.mean(ratings)) if ratings else 0.0,
                'average_quality_rating': float(np.mean(quality)) if quality else 0.0,
                'total_views': int(sum(p.view_count for p in self.papers.values())),
            }

    def seed_demo_data(self) -> None:
        """写入演示用的用户、论文和评审"""
        with self._lock:
            researchers = [
                ("researcher_1", "0x123abc...", "MIT Quantum Lab", "Quantum computing researcher", 45),
                ("researcher_2", "0x456def...", "Stanford Medical School",
                 "Medical researcher focusing on blockchain applications", 62),
                ("researcher_3", "0x789ghi...", "Oxford University", "AI ethics researcher", 17),
            ]
            users = []
            for username, wallet, institution, bio, balance in researchers:
                user = self.create_user(username, "wallet_auth", wallet, institution, bio)
                user.token_balance = balance
                users.append(user)

            original = "No plagiarism detected. Content appears to be original."
            cited = "All references are properly cited and valid."
            demo_papers = [
                dict(
                    title="Novel Approach to Quantum Computing Using Blockchain Verification",
                    abstract="This paper introduces a novel approach to quantum computing that leverages "
                             "blockchain technology for verification of quantum states. We demonstrate how "
                             "this approach can improve the reliability and security of quantum computations "
                             "in distributed systems.",
                    author_id=users[0].id, ipfs_cid="QmT7fsg3fTtDgVgLw...", metadata_hash="0x123...",
                    status=PaperStatus.VERIFIED, created_at=datetime(2023, 6, 15),
                    tags=["quantum-computing", "blockchain", "security"],
                    view_count=423, token_count=45, ai_verified=True,
                    ai_analysis=AIAnalysis(
                        plagiarism_check=original, reference_verification=cited,
                        content_summary="This paper presents a novel approach to quantum computing "
                                        "verification using blockchain technology.",
                        quality_rating=9,
                    ),
                ),
                dict(
                    title="Decentralized Clinical Trials: A Blockchain Approach",
                    abstract="This study explores how blockchain technology can enhance transparency and "
                             "data integrity in clinical trials, addressing reproducibility issues in "
                             "medical research.",
                    author_id=users[1].id, ipfs_cid="QmW7hsg2gHvDbKpT8...", metadata_hash="0x456...",
                    status=PaperStatus.REVIEWED, created_at=datetime(2023, 5, 29),
                    tags=["clinical-trials", "blockchain", "medical-research"],
                    view_count=287, token_count=62, ai_verified=True,
                    ai_analysis=AIAnalysis(
                        plagiarism_check=original, reference_verification=cited,
                        content_summary="A framework for decentralized clinical trials using blockchain "
                                        "technology.",
                        quality_rating=8,
                    ),
                ),
                dict(
                    title="Ethics of AI in Scientific Research: A Decentralized Framework",
                    abstract="This paper proposes a decentralized governance framework for ethical AI use "
                             "in scientific research, addressing concerns of bias and transparency.",
                    author_id=users[2].id, ipfs_cid="QmT9ksh3fTtDgVg3w...", metadata_hash="0x789...",
                    status=PaperStatus.SUBMITTED, created_at=datetime(2023, 7, 3),
                    tags=["ai-ethics", "blockchain", "governance"],
                    view_count=156, token_count=17,
                ),
            ]
            papers = []
            for fields in demo_papers:
                paper = Paper(id=self._paper_id, **fields)
                self.papers[paper.id] = paper
                self._paper_id += 1
                papers.append(paper)

            demo_reviews = [
                (papers[0], users[1], 4, "This paper presents a fascinating approach to quantum verification. "
                                         "The methodology is sound and the results are promising.",
                 datetime(2023, 6, 20)),
                (papers[0], users[2], 5, "Excellent work on combining quantum computing with blockchain "
                                         "verification. The security implications are well-explained.",
                 datetime(2023, 6, 25)),
                (papers[1], users[0], 4, "This paper makes a strong case for blockchain in clinical trials. "
                                         "The framework is well-designed.",
                 datetime(2023, 6, 10)),
                (papers[1], users[2], 5, "A comprehensive study on decentralizing clinical trials. The "
                                         "implementation details are thorough.",
                 datetime(2023, 6, 15)),
                (papers[2], users[0], 3, "This paper tackles an important topic in AI ethics governance. "
                                         "More concrete oversight mechanisms would help.",
                 datetime(2023, 7, 10)),
            ]
            for paper, reviewer, rating, content, created_at in demo_reviews:
                review = Review(
                    id=self._review_id, paper_id=paper.id, reviewer_id=reviewer.id,
                    content=content, rating=rating,
                    ipfs_cid=f"QmReview{self._review_id}...",
                    tx_hash=f"0xreview{self._review_id}hash...",
                    created_at=created_at,
                )
                self.reviews[review.id] = review
                self._review_id += 1

            # 演示数据之后的账本编号从 100 开始
            self._token_id = 100
        logger.info(f"Seeded {len(users)} users, {len(papers)} papers, {len(demo_reviews)} reviews")
