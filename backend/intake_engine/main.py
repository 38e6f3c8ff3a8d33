from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from intake_engine.config import settings
from intake_engine.logging_config import configure_logging
from intake_engine.routers.dynamic_data import router as dynamic_data_router
from intake_engine.routers.forms import router as forms_router
from intake_engine.routers.submissions import router as submissions_router

configure_logging(settings.LOG_LEVEL)

app = FastAPI(title="Intake Forms Backend (FastAPI + Mongo)")

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(forms_router)
app.include_router(submissions_router)
app.include_router(dynamic_data_router)


@app.get("/health")
async def health():
    return {"status": "ok"}
