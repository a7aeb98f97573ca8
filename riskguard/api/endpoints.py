import logging
import time
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from riskguard import __version__
from riskguard.api.models import (
    AgentAnalysisRequest,
    BlacklistRequest,
    FeedbackRequest,
    FingerprintRequest,
    FingerprintResponse,
    OfflineQueueRequest,
    OfflineSyncRequest,
    PredictionResponse,
    TransactionCreate,
    TransactionReference,
    UserCreate,
)
from riskguard.config import Config
from riskguard.exceptions import (
    CryptoError,
    ModelNotAvailableError,
    RecordNotFoundError,
    RiskGuardError,
    StorageError,
    UnknownUserError,
)
from riskguard.models.ensemble import EnsemblePrediction, MLFeatureVector
from riskguard.models.scoring import LoginAttemptResult, UserFraudProfile
from riskguard.offline.validator import OfflineStatus, QueueResult, SyncResult
from riskguard.pipeline import PipelineDecision
from riskguard.security.agent_behavior import AgentAnomalyScore
from riskguard.security.anomaly import AnomalyScore
from riskguard.security.sim_swap import DeviceChangeEvent, SimSwapResult
from riskguard.services import RiskServices
from riskguard.storage.schemas import FraudAlert, SecurityEvent, Transaction, User
from riskguard.training.trainer import ModelTrainer

logger = logging.getLogger(__name__)

# Global instances
router = APIRouter()
services = RiskServices()
model_trainer = ModelTrainer()
performance_metrics: List[int] = []


def get_services() -> RiskServices:
    return services


def _to_http_error(error: RiskGuardError) -> HTTPException:
    """Map domain errors onto HTTP status codes"""
    if isinstance(error, (UnknownUserError, RecordNotFoundError)):
        return HTTPException(status_code=404, detail=error.message)
    if isinstance(error, StorageError):
        return HTTPException(status_code=503, detail="Storage unavailable")
    if isinstance(error, CryptoError):
        return HTTPException(status_code=500, detail="Cryptographic operation failed")
    if isinstance(error, ModelNotAvailableError):
        return HTTPException(status_code=503, detail="Model not available")
    return HTTPException(status_code=500, detail="Internal error")


def _fail(operation: str, error: RiskGuardError) -> HTTPException:
    logger.error(f"{operation} failed: {error.error_code}")
    return _to_http_error(error)


def _resolve_transaction(request: TransactionReference, svc: RiskServices) -> Transaction:
    if request.transaction is not None:
        return request.transaction.to_transaction()

    transaction = svc.storage.get_transaction(request.transaction_id)
    if transaction is None:
        raise RecordNotFoundError(f"Transaction {request.transaction_id} not found")
    return transaction


def _record_timing(start_time: float) -> int:
    processing_time = int((time.time() - start_time) * 1000)
    performance_metrics.append(processing_time)

    # Keep only recent performance metrics
    if len(performance_metrics) > Config.MAX_PERFORMANCE_METRICS:
        performance_metrics.pop(0)
    return processing_time


@router.get("/")
async def root():
    """Service banner"""
    return {
        "service": Config.API_TITLE,
        "status": "running",
        "version": __version__,
    }


@router.get("/health")
async def health_check(svc: RiskServices = Depends(get_services)):
    """Component status for the risk service"""
    return {
        "status": "healthy",
        "components": {
            "storage": type(svc.storage).__name__,
            "rule_scorer": svc.scorer is not None,
            "anomaly_engine": svc.anomaly_engine is not None,
            "ensemble": f"{svc.ensemble.rule_model.model_version}+{svc.ensemble.network_model.model_version}",
            "offline_validator": svc.offline_validator is not None,
        },
        "performance": {
            "recent_predictions": len(performance_metrics),
            "avg_response_time_ms": (
                sum(performance_metrics[-10:]) / len(performance_metrics[-10:]) if performance_metrics else 0
            ),
        },
        "timestamp": svc.clock().isoformat(),
    }


@router.get("/metrics")
async def get_metrics(svc: RiskServices = Depends(get_services)):
    """Ensemble configuration, last training run and request timings"""
    avg_processing_time = sum(performance_metrics) / len(performance_metrics) if performance_metrics else 0
    return {
        "model_performance": model_trainer.model_metrics,
        "system_performance": {
            "avg_processing_time_ms": round(avg_processing_time, 2),
            "total_predictions": len(performance_metrics),
            "network_model": svc.ensemble.network_model.model_version,
            "ensemble_weights": {
                "rule": svc.ensemble.rule_weight,
                "network": svc.ensemble.network_weight,
            },
        },
        "timestamp": svc.clock().isoformat(),
    }


@router.post("/retrain")
async def retrain_model(svc: RiskServices = Depends(get_services)):
    """Train a network on fresh synthetic data and swap it into the ensemble"""
    model, metrics = model_trainer.train_model()
    svc.ensemble.network_model = model
    return {
        "message": "Model retrained successfully",
        "metrics": metrics,
        "timestamp": svc.clock().isoformat(),
    }


@router.post("/users", response_model=User, status_code=201)
async def create_user(request: UserCreate, svc: RiskServices = Depends(get_services)):
    user = User(**request.model_dump(exclude_none=True))
    try:
        return svc.storage.create_user(user)
    except RiskGuardError as e:
        raise _fail("User registration", e) from e


@router.post("/transactions", response_model=Transaction, status_code=201)
async def create_transaction(request: TransactionCreate, svc: RiskServices = Depends(get_services)):
    try:
        return svc.storage.create_transaction(request.to_transaction())
    except RiskGuardError as e:
        raise _fail("Transaction ingest", e) from e


@router.post("/predict", response_model=PredictionResponse)
async def predict_fraud(request: TransactionReference, svc: RiskServices = Depends(get_services)):
    """Score a stored or inline transaction with the rule scorer"""
    start_time = time.time()
    try:
        transaction = _resolve_transaction(request, svc)
        prediction = svc.scorer.predict_fraud(transaction, transaction.user_id)
    except RiskGuardError as e:
        raise _fail("Prediction", e) from e

    return PredictionResponse(
        **prediction.model_dump(),
        transaction_id=transaction.id,
        processing_time_ms=_record_timing(start_time),
        timestamp=svc.clock().isoformat(),
    )


@router.post("/transactions/process", response_model=PipelineDecision)
async def process_transaction(request: TransactionCreate, svc: RiskServices = Depends(get_services)):
    """Store, score and settle a transaction"""
    start_time = time.time()
    try:
        decision = svc.pipeline.process_transaction(request.to_transaction())
    except RiskGuardError as e:
        raise _fail("Transaction processing", e) from e
    _record_timing(start_time)
    return decision


@router.post("/anomaly", response_model=AnomalyScore)
async def score_anomaly(request: TransactionReference, svc: RiskServices = Depends(get_services)):
    try:
        transaction = _resolve_transaction(request, svc)
        return svc.anomaly_engine.analyze_transaction(transaction, transaction.user_id)
    except RiskGuardError as e:
        raise _fail("Anomaly scoring", e) from e


@router.post("/ensemble", response_model=EnsemblePrediction)
async def ensemble_decision(vector: MLFeatureVector, svc: RiskServices = Depends(get_services)):
    try:
        return svc.ensemble.predict(vector)
    except RiskGuardError as e:
        raise _fail("Ensemble prediction", e) from e


@router.post("/devices/fingerprint", response_model=FingerprintResponse)
async def fingerprint_device(request: FingerprintRequest, svc: RiskServices = Depends(get_services)):
    try:
        record, created = svc.fingerprinter.register_device(request.user_id, request.device_id, request.device_info)
    except RiskGuardError as e:
        raise _fail("Device fingerprinting", e) from e

    return FingerprintResponse(
        fingerprint_id=record.id,
        device_id=record.device_id,
        created=created,
        trust_score=record.trust_score,
        processed=record.fingerprint.processed,
    )


@router.post("/sim-swap/detect", response_model=SimSwapResult)
async def detect_sim_swap(event: DeviceChangeEvent, svc: RiskServices = Depends(get_services)):
    try:
        return svc.sim_swap_detector.detect_sim_swap(event)
    except RiskGuardError as e:
        raise _fail("SIM swap detection", e) from e


@router.post("/agents/{agent_id}/analyze", response_model=AgentAnomalyScore)
async def analyze_agent(agent_id: str, request: Optional[AgentAnalysisRequest] = None,
                        svc: RiskServices = Depends(get_services)):
    try:
        if request is not None and request.transactions is not None:
            transactions = [t.to_transaction() for t in request.transactions]
        else:
            transactions = svc.storage.get_agent_transactions(agent_id, 1, now=svc.clock())
        return svc.agent_analyzer.analyze_agent_behavior(agent_id, transactions)
    except RiskGuardError as e:
        raise _fail("Agent analysis", e) from e


@router.post("/offline/queue", response_model=QueueResult)
async def queue_offline(request: OfflineQueueRequest, x_device_secret: Optional[str] = Header(default=None),
                        svc: RiskServices = Depends(get_services)):
    if not x_device_secret:
        raise HTTPException(status_code=400, detail="Device secret required for offline transactions")
    try:
        return svc.offline_validator.queue_offline(
            request.user_id,
            request.transaction.model_dump(exclude_none=True),
            request.device_id,
            x_device_secret,
        )
    except RiskGuardError as e:
        raise _fail("Offline queue", e) from e


@router.post("/offline/sync", response_model=SyncResult)
async def sync_offline(request: OfflineSyncRequest, x_device_secret: Optional[str] = Header(default=None),
                       svc: RiskServices = Depends(get_services)):
    if not x_device_secret:
        raise HTTPException(status_code=400, detail="Device secret required for sync")
    try:
        return svc.offline_validator.sync_offline(request.user_id, x_device_secret)
    except RiskGuardError as e:
        raise _fail("Offline sync", e) from e


@router.get("/offline/status/{user_id}", response_model=OfflineStatus)
async def offline_status(user_id: str, svc: RiskServices = Depends(get_services)):
    return svc.offline_validator.get_offline_status(user_id)


@router.post("/security/failed-login/{user_id}", response_model=LoginAttemptResult)
async def failed_login(user_id: str, svc: RiskServices = Depends(get_services)):
    try:
        return svc.login_tracker.track_failed_login(user_id)
    except RiskGuardError as e:
        raise _fail("Failed-login tracking", e) from e


@router.post("/security/blacklist", status_code=201)
async def add_to_blacklist(request: BlacklistRequest, svc: RiskServices = Depends(get_services)):
    svc.blacklist.add(request.identifier, request.kind, request.reason)
    return {"kind": request.kind, "added": True}


@router.post("/transactions/{transaction_id}/feedback", response_model=Transaction)
async def transaction_feedback(transaction_id: str, request: FeedbackRequest,
                               svc: RiskServices = Depends(get_services)):
    try:
        return svc.scorer.update_model_with_feedback(transaction_id, request.was_fraud, request.user_feedback)
    except RiskGuardError as e:
        raise _fail("Feedback", e) from e


def _require_user(user_id: str, svc: RiskServices):
    if svc.storage.get_user(user_id) is None:
        raise HTTPException(status_code=404, detail=f"User {user_id} not found")


@router.get("/users/{user_id}/fraud-profile", response_model=UserFraudProfile)
async def user_fraud_profile(user_id: str, svc: RiskServices = Depends(get_services)):
    _require_user(user_id, svc)
    return svc.scorer.get_user_fraud_profile(user_id)


@router.get("/users/{user_id}/alerts", response_model=List[FraudAlert])
async def user_alerts(user_id: str, active_only: bool = False, svc: RiskServices = Depends(get_services)):
    _require_user(user_id, svc)
    return svc.storage.get_user_fraud_alerts(user_id, active_only=active_only)


@router.get("/users/{user_id}/security-events", response_model=List[SecurityEvent])
async def user_security_events(user_id: str, unresolved_only: bool = False,
                               svc: RiskServices = Depends(get_services)):
    _require_user(user_id, svc)
    return svc.storage.get_user_security_events(user_id, unresolved_only=unresolved_only)
