import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import APIRouter, Body, Depends, FastAPI, File, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from openai import AsyncOpenAI

from .analysis import PaperAnalyzer
from .auth import IdentityResolver, SignatureVerifier
from .config import Settings, configure_logging, get_settings
from .errors import DeSciError, NotFound, ValidationFailed
from .ipfs import ContentStoreClient
from .models import Paper, PaperWithAuthor, Review, ReviewWithReviewer, Token, UserSummary
from .repository import PaperRepository
from .workflow import PaperWorkflow

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None,
               repository: Optional[PaperRepository] = None,
               content_store: Optional[ContentStoreClient] = None,
               llm_client: Optional[AsyncOpenAI] = None) -> FastAPI:
    """组装系统组件并注册路由"""
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    if repository is None:
        repository = PaperRepository(submission_bonus=settings.submission_bonus)
        if settings.seed_demo_data:
            repository.seed_demo_data()
    if content_store is None:
        content_store = ContentStoreClient(
            settings.pinata_api_key,
            settings.pinata_secret_api_key,
            api_url=settings.pinata_api_url,
            gateway_url=settings.ipfs_gateway,
        )
    if llm_client is None and settings.openai_api_key:
        llm_client = AsyncOpenAI(api_key=settings.openai_api_key)

    analyzer = PaperAnalyzer(
        repository,
        content_store,
        llm_client,
        model=settings.openai_model,
        max_chunk_size=settings.max_chunk_size,
        single_chunk_threshold=settings.single_chunk_threshold,
        sampled_threshold=settings.sampled_threshold,
        verification_bonus=settings.verification_bonus,
    )
    workflow = PaperWorkflow(
        repository,
        IdentityResolver(repository),
        SignatureVerifier(),
        content_store,
        analyzer,
        review_bonus=settings.review_bonus,
        min_review_length=settings.min_review_length,
        require_signature=settings.require_signature,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        # 关闭前等待后台分析完成
        pending = workflow.dispatcher.pending
        if pending:
            logger.info(f"Waiting for {len(pending)} background analyses")
        await workflow.dispatcher.join()

    app = FastAPI(title="DeSci Paper Review API", lifespan=lifespan)
    app.state.settings = settings
    app.state.repository = repository
    app.state.content_store = content_store
    app.state.workflow = workflow

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        response = await call_next(request)
        logger.info(f"{request.method} {request.url.path} -> {response.status_code}")
        return response

    @app.exception_handler(DeSciError)
    async def handle_desci_error(request: Request, exc: DeSciError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        body: Dict[str, Any] = {"message": exc.message}
        if exc.errors:
            body["errors"] = exc.errors
        return JSONResponse(status_code=exc.status_code, content=body)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = [
            {"field": ".".join(str(p) for p in e["loc"]), "message": e["msg"]}
            for e in exc.errors()
        ]
        return JSONResponse(status_code=400, content={"message": "Invalid request data", "errors": errors})

    app.include_router(build_router())
    return app


def get_workflow(request: Request) -> PaperWorkflow:
    return request.app.state.workflow


def get_repository(request: Request) -> PaperRepository:
    return request.app.state.repository


def get_content_store(request: Request) -> ContentStoreClient:
    return request.app.state.content_store


def build_router():
    router = APIRouter(prefix="/api")

    # 论文相关接口
    @router.get("/papers", response_model=List[PaperWithAuthor])
    async def get_papers(repository: PaperRepository = Depends(get_repository)):
        """获取所有论文列表"""
        return repository.get_all_papers()

    @router.get("/papers/{paper_id}", response_model=PaperWithAuthor)
    async def get_paper(paper_id: int, workflow: PaperWorkflow = Depends(get_workflow)):
        return workflow.view_paper(paper_id)

    @router.post("/papers", response_model=Paper, status_code=201)
    async def create_paper(payload: Dict[str, Any] = Body(...),
                           workflow: PaperWorkflow = Depends(get_workflow)):
        return await workflow.submit_paper(payload)

    @router.post("/papers/{paper_id}/analyze")
    async def analyze_paper(paper_id: int, workflow: PaperWorkflow = Depends(get_workflow)):
        """手动触发 AI 分析"""
        analysis, status = await workflow.reanalyze(paper_id)
        return {
            "message": "AI analysis completed successfully",
            "analysis": analysis,
            "status": status,
        }

    # 评审相关接口
    @router.get("/papers/{paper_id}/reviews", response_model=List[ReviewWithReviewer])
    async def get_reviews(paper_id: int, repository: PaperRepository = Depends(get_repository)):
        return repository.get_reviews_for_paper(paper_id)

    @router.post("/papers/{paper_id}/reviews", response_model=Review, status_code=201)
    async def create_review(paper_id: int, payload: Dict[str, Any] = Body(...),
                            workflow: PaperWorkflow = Depends(get_workflow)):
        return await workflow.submit_review(paper_id, payload)

    # IPFS 接口
    @router.post("/ipfs/upload")
    async def upload_file(request: Request, file: Optional[UploadFile] = File(None),
                          content_store: ContentStoreClient = Depends(get_content_store)):
        if file is None:
            raise ValidationFailed("No file provided")
        content = await file.read()
        if len(content) > request.app.state.settings.max_upload_bytes:
            raise ValidationFailed("File too large")
        cid = await asyncio.to_thread(content_store.upload_bytes, content, file.filename)
        return {"cid": cid}

    @router.post("/ipfs/metadata")
    async def upload_metadata(metadata: Any = Body(None),
                              content_store: ContentStoreClient = Depends(get_content_store)):
        if metadata is None:
            raise ValidationFailed("No metadata provided")
        return {"cid": await asyncio.to_thread(content_store.upload_json, metadata)}

    @router.get("/ipfs/check/{cid}")
    async def check_ipfs(cid: str, content_store: ContentStoreClient = Depends(get_content_store)):
        return {"exists": await asyncio.to_thread(content_store.exists, cid)}

    # 用户与代币接口
    @router.get("/users/{wallet_address}", response_model=UserSummary)
    async def get_user(wallet_address: str, repository: PaperRepository = Depends(get_repository)):
        user = repository.get_user_by_wallet_address(wallet_address)
        if user is None:
            raise NotFound("User not found")
        return UserSummary.from_user(user, "Unknown User")

    @router.get("/users/{wallet_address}/tokens", response_model=List[Token])
    async def get_user_tokens(wallet_address: str, repository: PaperRepository = Depends(get_repository)):
        user = repository.get_user_by_wallet_address(wallet_address)
        if user is None:
            raise NotFound("User not found")
        return repository.get_user_tokens(user.id)

    # 统计信息接口
    @router.get("/stats")
    async def get_stats(repository: PaperRepository = Depends(get_repository)):
        return {
            "papers": repository.get_paper_stats(),
            "tokens": repository.get_token_stats(),
        }

    return router


app = create_app()


def main():
    settings = get_settings()
    uvicorn.run("desci.api:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
