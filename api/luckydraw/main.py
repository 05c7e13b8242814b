import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Path, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import activities, codes, inventory, ledger, redemption
from .config import settings
from .db import Base, engine, get_db
from .errors import LotteryError
from .ledger import ClientInfo
from .logger import setup_logger
from .schemas import (
    ActivityIn, ActivityOut, ActivityStatistics, ActivityStatusIn, ActivityUpdate,
    AdminLoginRequest, AdminLoginResponse, CodeBatchIn, CodeBatchOut, CodeCheck, CodeCheckIn, CodeIn,
    CodeOut, DrawRequest, DrawResponse, InventoryStats, OfflineDrawRequest, ParticipantInfo, PrizeIn, PrizeOut,
    PrizeUpdate, ProbabilityCheck, RecordIdsIn, RecordOut, RecordPage, StockAdjustIn, WinningStats,
)
from .security import InvalidCredentials, InvalidToken, decode_operator_token, login_operator

setup_logger("luckydraw", settings.log_level, settings.log_file)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Dev convenience: create tables if they don't exist
    Base.metadata.create_all(bind=engine)
    yield


app = FastAPI(title="Lucky Draw API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_origin_regex=settings.allowed_origin_regex,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LotteryError)
async def lottery_exc_handler(request: Request, exc: LotteryError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

@app.exception_handler(StarletteHTTPException)
async def http_exc_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"message": str(exc.detail), "code": "HTTP_ERROR"})

@app.exception_handler(RequestValidationError)
async def validation_exc_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={"message": "Validation error", "code": "VALIDATION_ERROR", "errors": exc.errors()},
    )


def require_operator(authorization: str | None = Header(default=None, alias="Authorization")) -> int:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
    token = authorization.split(" ", 1)[1].strip()
    try:
        return decode_operator_token(token)
    except InvalidToken as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc))


def client_info(request: Request) -> ClientInfo:
    return ClientInfo(
        ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


@app.get("/health")
def health():
    return {"ok": True}


@app.post("/api/admin/login", response_model=AdminLoginResponse)
def admin_login(body: AdminLoginRequest):
    try:
        return AdminLoginResponse(token=login_operator(body.password))
    except InvalidCredentials as exc:
        raise HTTPException(status_code=401, detail=str(exc))


# --- draws ---

@app.post("/api/lottery/activities/{activity_id}/draw", response_model=DrawResponse)
def draw(activity_id: int, payload: DrawRequest, request: Request, db: Session = Depends(get_db)):
    outcome = redemption.draw(db, activity_id, payload.lottery_code, client_info(request))
    return outcome.as_response()


@app.post("/api/lottery/activities/{activity_id}/offline-draw", response_model=DrawResponse)
def offline_draw(
    activity_id: int,
    payload: OfflineDrawRequest,
    request: Request,
    db: Session = Depends(get_db),
    operator_id: int = Depends(require_operator),
):
    outcome = redemption.offline_draw(
        db, activity_id, payload.lottery_code, operator_id, client_info(request), payload.prize_id
    )
    return outcome.as_response()


@app.post("/api/lottery/activities/{activity_id}/codes/check", response_model=List[CodeCheck])
def check_codes(activity_id: int, payload: CodeCheckIn, db: Session = Depends(get_db)):
    return codes.check_codes(db, activity_id, payload.codes)


# --- activities ---

@app.post("/api/admin/activities", response_model=ActivityOut, status_code=201)
def create_activity(payload: ActivityIn, db: Session = Depends(get_db), operator_id: int = Depends(require_operator)):
    return activities.create_activity(db, payload, created_by=operator_id)

@app.get("/api/admin/activities/{activity_id}", response_model=ActivityOut)
def get_activity(activity_id: int, db: Session = Depends(get_db), _=Depends(require_operator)):
    return activities.get_activity(db, activity_id)

@app.patch("/api/admin/activities/{activity_id}", response_model=ActivityOut)
def update_activity(activity_id: int, payload: ActivityUpdate, db: Session = Depends(get_db), _=Depends(require_operator)):
    try:
        return activities.update_activity(db, activity_id, payload)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))

@app.put("/api/admin/activities/{activity_id}/status", response_model=ActivityOut)
def set_activity_status(activity_id: int, payload: ActivityStatusIn, db: Session = Depends(get_db), _=Depends(require_operator)):
    return activities.set_status(db, activity_id, payload.status)

@app.delete("/api/admin/activities/{activity_id}")
def delete_activity(activity_id: int, db: Session = Depends(get_db), _=Depends(require_operator)):
    activities.delete_activity(db, activity_id)
    return {"ok": True}


# --- prizes ---

@app.get("/api/admin/activities/{activity_id}/prizes", response_model=List[PrizeOut])
def list_prizes(activity_id: int, db: Session = Depends(get_db), _=Depends(require_operator)):
    activities.get_activity(db, activity_id)
    return inventory.list_prizes(db, activity_id)

@app.post("/api/admin/activities/{activity_id}/prizes", response_model=PrizeOut, status_code=201)
def create_prize(activity_id: int, payload: PrizeIn, db: Session = Depends(get_db), _=Depends(require_operator)):
    activities.get_activity(db, activity_id)
    return inventory.create_prize(db, activity_id, payload)

@app.get("/api/admin/activities/{activity_id}/prizes/probability", response_model=ProbabilityCheck)
def check_probabilities(activity_id: int, db: Session = Depends(get_db), _=Depends(require_operator)):
    activities.get_activity(db, activity_id)
    return inventory.validate_probability_sum(db, activity_id)

@app.put("/api/admin/prizes/{prize_id}", response_model=PrizeOut)
def update_prize(prize_id: int, payload: PrizeUpdate, db: Session = Depends(get_db), _=Depends(require_operator)):
    return inventory.update_prize(db, prize_id, payload)

@app.post("/api/admin/prizes/{prize_id}/stock", response_model=PrizeOut)
def adjust_stock(prize_id: int, payload: StockAdjustIn, db: Session = Depends(get_db), _=Depends(require_operator)):
    return inventory.adjust_stock(db, prize_id, payload.delta)

@app.delete("/api/admin/prizes/{prize_id}")
def delete_prize(prize_id: int = Path(..., ge=1), db: Session = Depends(get_db), _=Depends(require_operator)):
    inventory.delete_prize(db, prize_id)
    return {"ok": True}


# --- codes ---

@app.post("/api/admin/activities/{activity_id}/lottery-codes", response_model=CodeOut, status_code=201)
def create_code(activity_id: int, payload: CodeIn, db: Session = Depends(get_db), _=Depends(require_operator)):
    activity = activities.get_activity(db, activity_id)
    return codes.create_code(db, activity, payload.code, payload.participant_info)

@app.post("/api/admin/activities/{activity_id}/lottery-codes/batch", response_model=CodeBatchOut, status_code=201)
def create_code_batch(activity_id: int, payload: CodeBatchIn, db: Session = Depends(get_db), _=Depends(require_operator)):
    activity = activities.get_activity(db, activity_id)
    created = codes.create_batch(db, activity, payload.count)
    return CodeBatchOut(created_count=len(created), lottery_codes=[CodeOut.model_validate(c) for c in created])

@app.post("/api/admin/lottery-codes/{code_id}/invalidate", response_model=CodeOut)
def invalidate_code(code_id: int, db: Session = Depends(get_db), _=Depends(require_operator)):
    return codes.invalidate(db, code_id)

@app.put("/api/admin/lottery-codes/{code_id}/participant", response_model=CodeOut)
def update_participant(code_id: int, payload: ParticipantInfo, db: Session = Depends(get_db), _=Depends(require_operator)):
    return codes.update_participant_info(db, code_id, payload)

@app.get("/api/admin/lottery-codes/formats")
def code_formats(_=Depends(require_operator)):
    return codes.supported_formats()


# --- records & statistics ---

@app.get("/api/admin/records", response_model=RecordPage)
def list_records(
    activity_id: Optional[int] = None,
    winner_only: bool = False,
    operator_id: Optional[int] = None,
    draw_type: Optional[str] = Query(default=None, pattern="^(online|offline)$"),
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
    _=Depends(require_operator),
):
    rows, total = ledger.list_records(
        db,
        activity_id=activity_id,
        winner_only=winner_only,
        operator_id=operator_id,
        draw_type=draw_type,
        start=start_date,
        end=end_date,
        page=page,
        limit=limit,
    )
    return RecordPage(records=[RecordOut.model_validate(r) for r in rows], total=total, page=page, limit=limit)

@app.delete("/api/admin/records/{record_id}")
def delete_record(record_id: int, db: Session = Depends(get_db), _=Depends(require_operator)):
    redemption.delete_record(db, record_id)
    return {"ok": True}

@app.delete("/api/admin/records")
def delete_records(payload: RecordIdsIn, db: Session = Depends(get_db), _=Depends(require_operator)):
    deleted = redemption.delete_records(db, payload.ids)
    return {"ok": True, "deleted": deleted}

@app.get("/api/activities/{activity_id}/stats/codes", response_model=InventoryStats)
def inventory_stats(activity_id: int, db: Session = Depends(get_db)):
    activities.get_activity(db, activity_id)
    return ledger.inventory_stats(db, activity_id)

@app.get("/api/admin/activities/{activity_id}/stats/winners", response_model=WinningStats)
def winning_stats(
    activity_id: int,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    db: Session = Depends(get_db),
    _=Depends(require_operator),
):
    activities.get_activity(db, activity_id)
    return ledger.winning_stats(db, activity_id, start_date, end_date)

@app.get("/api/admin/activities/{activity_id}/statistics", response_model=ActivityStatistics)
def activity_statistics(activity_id: int, db: Session = Depends(get_db), _=Depends(require_operator)):
    return activities.activity_statistics(db, activity_id)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "luckydraw.main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8080)),
        reload=False,
    )
