from fastapi import FastAPI
from pydantic import BaseModel, Field
import numpy as np
import joblib
import json
import os
from collections import OrderedDict

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
ART_DIR = os.path.join(BASE_DIR, "phraseloop_intent_model")

CLF_PATH = os.path.join(ART_DIR, "classifier.joblib")
ID2INTENT_PATH = os.path.join(ART_DIR, "id2intent.json")
ENCODER_NAME_PATH = os.path.join(ART_DIR, "encoder_name.txt")

# Tunables
CACHE_MAX = 2048
MIN_CONFIDENCE = 0.40   # below -> action "unknown"
TOP2_MARGIN_MIN = 0.05  # top-2 too close -> action "unknown"

app = FastAPI(title="phraseloop intent classifier (local, LogisticRegression)")


class ClassifyRequest(BaseModel):
    utterance: str
    context_summary: dict = Field(default_factory=dict)
    known_actions: list[str] = Field(default_factory=list)
    max_tokens: int = 100


encoder = None
clf = None
id2intent: dict[str, str] | None = None

_cache: OrderedDict[str, dict] = OrderedDict()


def _norm(s: str | None) -> str:
    if not s:
        return ""
    s = str(s).strip()
    s = " ".join(s.split()).lower()
    return s


def _cache_get(k: str):
    if k in _cache:
        v = _cache.pop(k)
        _cache[k] = v
        return v
    return None


def _cache_put(k: str, v: dict):
    if k in _cache:
        _cache.pop(k)
    _cache[k] = v
    if len(_cache) > CACHE_MAX:
        _cache.popitem(last=False)


def _cache_key(req: ClassifyRequest, text: str) -> str:
    ctx = req.context_summary or {}
    allowed = ",".join(sorted(req.known_actions))
    return "|".join([text, str(ctx.get("focused_app_id") or ""), str(ctx.get("mode") or ""), allowed])


@app.on_event("startup")
def _startup():
    global encoder, clf, id2intent
    if encoder is not None and clf is not None and id2intent is not None:
        return

    missing = [p for p in (CLF_PATH, ID2INTENT_PATH, ENCODER_NAME_PATH) if not os.path.exists(p)]
    if missing:
        raise FileNotFoundError(f"Missing artifacts: {missing}. Files in {ART_DIR}: {os.listdir(ART_DIR) if os.path.isdir(ART_DIR) else 'NO_DIR'}")

    from sentence_transformers import SentenceTransformer

    with open(ENCODER_NAME_PATH, "r", encoding="utf-8") as f:
        enc_name = f.read().strip()

    encoder = SentenceTransformer(enc_name)   # downloads if needed
    clf = joblib.load(CLF_PATH)

    with open(ID2INTENT_PATH, "r", encoding="utf-8") as f:
        id2intent = json.load(f)


@app.get("/")
def root():
    return {
        "status": "ok",
        "encoder_loaded": encoder is not None,
        "clf_loaded": clf is not None,
        "num_classes": None if clf is None else int(len(getattr(clf, "classes_", []))),
        "cache_size": len(_cache),
        "artifacts_dir": os.path.basename(ART_DIR),
    }


@app.get("/health")
def health():
    return {"status": "ok" if encoder is not None and clf is not None else "loading"}


def _unknown(confidence: float = 0.0, margin: float = 0.0, error: str | None = None) -> dict:
    resp = {"action": "unknown", "confidence": round(confidence, 4), "margin": round(margin, 4)}
    if error:
        resp["error"] = error
    return resp


@app.post("/classify")
def classify(req: ClassifyRequest):
    text = _norm(req.utterance)
    if not text:
        return _unknown(error="empty utterance")
    if encoder is None or clf is None or id2intent is None:
        return _unknown(error="model not loaded")

    key = _cache_key(req, text)
    cached = _cache_get(key)
    if cached is not None:
        return cached

    emb = encoder.encode([text], normalize_embeddings=True)
    proba = np.asarray(clf.predict_proba(emb)[0], dtype=float)

    # Only classes the caller can execute take part.
    if req.known_actions:
        allowed = set(req.known_actions)
        mask = np.array([id2intent.get(str(i), "") in allowed for i in range(len(proba))])
        proba = np.where(mask, proba, 0.0)
        if not proba.any():
            resp = _unknown()
            _cache_put(key, resp)
            return resp

    best_idx = int(np.argmax(proba))
    best_p = float(proba[best_idx])

    if len(proba) >= 2:
        top2 = np.partition(proba, -2)[-2:]
        margin = float(top2.max() - top2.min())
    else:
        margin = best_p

    intent = id2intent.get(str(best_idx), "")

    if not intent or best_p < MIN_CONFIDENCE or margin < TOP2_MARGIN_MIN:
        resp = _unknown(best_p, margin)
    else:
        resp = {"action": intent, "confidence": round(best_p, 4), "margin": round(margin, 4)}
    _cache_put(key, resp)
    return resp
