from fastapi import FastAPI, APIRouter, Depends
from dotenv import load_dotenv
from starlette.middleware.cors import CORSMiddleware
import os
import logging
from pathlib import Path
from typing import List

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

from .routes import messages_router, webhooks_router
from .schema import ensure_messages_schema
from .whatsapp.container import PipelineContainer, get_pipeline_container

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Create the main app
app = FastAPI(title="Tezeus CRM Message Pipeline")


# allow_origins=["*"] fails with allow_credentials=True in some browsers/proxies
def resolve_cors_allow_origins() -> List[str]:
    raw = (os.getenv("CORS_ALLOW_ORIGINS") or "").strip()
    if raw:
        return [o.strip() for o in raw.split(",") if o.strip()]
    return [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=resolve_cors_allow_origins(),
    allow_origin_regex=os.getenv("CORS_ALLOW_ORIGIN_REGEX") or None,
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "x-workspace-id"],
)


@app.get("/health")
async def health_check(container: PipelineContainer = Depends(get_pipeline_container)):
    return {
        "status": "healthy",
        "service": "tezeus-crm",
        "providers": container.registry.list_provider_ids(),
        "counters": container.obs.counters(),
    }


api_router = APIRouter(prefix="/api")
api_router.include_router(messages_router)
api_router.include_router(webhooks_router)
app.include_router(api_router)


@app.on_event("startup")
async def startup_event():
    container = get_pipeline_container()
    ensure_messages_schema(container.store.client)
    logger.info(f"Message pipeline started with providers: {', '.join(container.registry.list_provider_ids())}")


def run():
    import uvicorn
    uvicorn.run(
        "tezeus_crm.server:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8001")),
        reload=(os.getenv("RELOAD") or "").strip().lower() in {"1", "true", "yes"},
    )


if __name__ == "__main__":
    run()
