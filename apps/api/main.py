"""FastAPI entrypoint for the Lark record bridge."""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, List

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from lib.ai_client import AIParserPool
from lib.config import LARK_CONFIG_PATH, LOG_DIR, LOG_LEVEL, LOG_RETENTION_DAYS, SERVER_HOST, SERVER_PORT
from lib.config_store import ConfigurationStore
from lib.models import AddRecordRequest, AIParseRequest, AppConfig, BitableInfo, FieldInfo, TableInfo, TableKey
from lib.orchestrator import RecordOrchestrator
from lib.validation import (
    require_param,
    validate_credentials_payload,
    validate_parse_content,
    validate_record_request,
)
from utils.errors import (
    AIServiceError,
    BridgeError,
    ConfigurationMissing,
    InvalidCredentials,
    RemoteError,
    ValidationError,
)
from utils.logging import enable_file_logging, logger, set_log_level

_store = ConfigurationStore(LARK_CONFIG_PATH)
_orchestrator = RecordOrchestrator(_store)
_ai_parsers = AIParserPool()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    set_log_level(LOG_LEVEL)
    if LOG_DIR:
        enable_file_logging(LOG_DIR, retention_days=LOG_RETENTION_DAYS)
    _store.load()
    logger.info("Lark record bridge started")
    yield
    logger.info("Lark record bridge stopped")


app = FastAPI(title="Lark Record Bridge", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Origin", "Content-Type", "Authorization"],
)


def get_store() -> ConfigurationStore:
    return _store


def get_orchestrator() -> RecordOrchestrator:
    return _orchestrator


def get_ai_parsers() -> AIParserPool:
    return _ai_parsers


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error(400, str(exc))


@app.exception_handler(BridgeError)
async def bridge_error_handler(request: Request, exc: BridgeError) -> JSONResponse:
    if isinstance(exc, (ConfigurationMissing, InvalidCredentials, ValidationError)):
        return _error(400, str(exc))
    if isinstance(exc, (RemoteError, AIServiceError)):
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return _error(500, str(exc))
    logger.exception("Unhandled bridge error on %s %s", request.method, request.url.path)
    return _error(500, str(exc))


def _validate_remote(config: AppConfig, orchestrator: RecordOrchestrator) -> None:
    validate_credentials_payload(config)
    client = orchestrator.clients.get(config.app_id, config.app_secret)
    try:
        client.validate_credentials()
    except (InvalidCredentials, RemoteError) as exc:
        raise InvalidCredentials(f"飞书配置无效: {exc}") from exc


@app.get("/health")
def health_check() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/api/config")
def save_config(
    config: AppConfig,
    store: ConfigurationStore = Depends(get_store),
    orchestrator: RecordOrchestrator = Depends(get_orchestrator),
) -> dict:
    _validate_remote(config, orchestrator)
    merged = store.merge(config)
    logger.info("Configuration saved (%d tables)", len(merged.tables))
    return merged.model_dump()


@app.get("/api/config")
def read_config(store: ConfigurationStore = Depends(get_store)):
    if not store.is_configured():
        return _error(404, "未配置")
    return store.get().model_dump()


@app.post("/api/config/test")
def test_config(config: AppConfig, orchestrator: RecordOrchestrator = Depends(get_orchestrator)) -> dict:
    _validate_remote(config, orchestrator)
    return {"message": "配置有效"}


@app.get("/api/bitables", response_model=List[BitableInfo])
def list_bitables(orchestrator: RecordOrchestrator = Depends(get_orchestrator)) -> List[BitableInfo]:
    return orchestrator.client().list_bitables()


@app.get("/api/bitables/tables", response_model=List[TableInfo])
def list_tables(
    app_token: str = Query(default=""),
    is_wiki: str = Query(default=""),
    orchestrator: RecordOrchestrator = Depends(get_orchestrator),
) -> List[TableInfo]:
    client = orchestrator.client()
    return client.list_tables(require_param("app_token", app_token), is_wiki == "true")


@app.get("/api/bitables/fields", response_model=List[FieldInfo])
def list_fields(
    app_token: str = Query(default=""),
    table_id: str = Query(default=""),
    orchestrator: RecordOrchestrator = Depends(get_orchestrator),
) -> List[FieldInfo]:
    client = orchestrator.client()
    return client.list_fields(require_param("app_token", app_token), require_param("table_id", table_id))


@app.post("/api/records")
def add_record(request: AddRecordRequest, orchestrator: RecordOrchestrator = Depends(get_orchestrator)) -> dict:
    fields = validate_record_request(request)
    record_id = orchestrator.insert_and_watch(TableKey(request.app_token, request.table_id), fields)
    return {"message": "记录添加成功", "recordID": record_id}


@app.get("/api/records/check")
def check_record(
    app_token: str = Query(default=""),
    table_id: str = Query(default=""),
    record_id: str = Query(default=""),
    orchestrator: RecordOrchestrator = Depends(get_orchestrator),
) -> dict:
    orchestrator.client()
    completed = orchestrator.check_record(
        require_param("app_token", app_token),
        require_param("table_id", table_id),
        require_param("record_id", record_id),
    )
    return {"completed": completed}


@app.post("/api/ai/parse")
def ai_parse(
    request: AIParseRequest,
    store: ConfigurationStore = Depends(get_store),
    parsers: AIParserPool = Depends(get_ai_parsers),
) -> dict:
    content = validate_parse_content(request.content)
    parser = parsers.get(store.get().siliconflow)
    return {"result": parser.parse(content, request.prompt)}


@app.get("/api/ai/models")
def ai_models(
    store: ConfigurationStore = Depends(get_store),
    parsers: AIParserPool = Depends(get_ai_parsers),
) -> dict:
    return {"models": parsers.get(store.get().siliconflow).list_models()}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=SERVER_HOST, port=SERVER_PORT)
