from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import List, Optional
from datetime import datetime
from enum import Enum


class CamelModel(BaseModel):
    # 属性用 snake_case，JSON 字段用 camelCase
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PaperStatus(str, Enum):
    SUBMITTED = "submitted"
    REVIEWED = "reviewed"
    VERIFIED = "verified"


class AIAnalysis(CamelModel):
    plagiarism_check: str
    reference_verification: str
    content_summary: str
    quality_rating: int = Field(ge=1, le=10)


class User(CamelModel):
    id: int
    username: str
    password: str
    wallet_address: Optional[str] = None
    institution: Optional[str] = None
    bio: Optional[str] = None
    profile_image: Optional[str] = None
    token_balance: int = 0


class UserSummary(CamelModel):
    """不含凭据的用户信息"""
    id: Optional[int] = None
    username: str
    wallet_address: Optional[str] = None
    institution: Optional[str] = None
    bio: Optional[str] = None
    profile_image: Optional[str] = None
    token_balance: int = 0

    @classmethod
    def from_user(cls, user: Optional[User], placeholder: str) -> "UserSummary":
        if user is None:
            return cls(username=placeholder)
        return cls(**user.model_dump(exclude={"password"}))


class Paper(CamelModel):
    id: int
    title: str
    abstract: str
    author_id: int
    ipfs_cid: str
    metadata_hash: Optional[str] = None
    status: PaperStatus = PaperStatus.SUBMITTED
    created_at: datetime = Field(default_factory=datetime.now)
    tags: List[str] = []
    view_count: int = 0
    token_count: int = 0
    ai_verified: bool = False
    ai_analysis: Optional[AIAnalysis] = None


class PaperWithAuthor(Paper):
    author: UserSummary
    review_count: int = 0


class Review(CamelModel):
    id: int
    paper_id: int
    reviewer_id: int
    content: str
    rating: int = Field(ge=1, le=5, strict=True)
    ipfs_cid: Optional[str] = None
    tx_hash: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)


class ReviewWithReviewer(Review):
    reviewer: UserSummary


class Token(CamelModel):
    id: int
    user_id: int
    amount: int = Field(gt=0)
    reason: str
    tx_hash: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)


# 请求模型
class PaperSubmission(CamelModel):
    title: str = Field(min_length=1)
    abstract: str = Field(min_length=1)
    ipfs_cid: str = Field(min_length=1)
    metadata_hash: Optional[str] = None
    tags: Optional[List[str]] = None
    wallet_address: str = Field(min_length=1)
    signature: Optional[str] = None


class ReviewSubmission(CamelModel):
    content: str
    rating: int = Field(ge=1, le=5, strict=True)
