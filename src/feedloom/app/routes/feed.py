import logging
from dataclasses import dataclass

from quart import Blueprint, Request, abort, jsonify, request

from feedloom.app.services.container import get_sessions
from feedloom.app.services.feed_pipeline import (
    FeedAction,
    FeedCompositionEngine,
    FeedFilters,
    FeedResult,
    SearchQuery,
)


logger = logging.getLogger(__name__)

feed_bp = Blueprint("feed", __name__)


@dataclass(slots=True)
class FeedRequestContext:
    session_id: str | None
    query: SearchQuery
    action: FeedAction


def resolve_feed_context(req: Request) -> FeedRequestContext:
    args = req.args
    filters = FeedFilters.from_params(
        kind=args.get("kind"),
        time_range=args.get("range"),
        sort=args.get("sort"),
        author_id=args.get("author"),
    )
    query = SearchQuery(
        text=(args.get("q") or "").strip(),
        filters=filters,
        creator_scope=(args.get("creator") or "").strip() or None,
    )
    action = FeedAction.AUTO
    if args.get("action") == FeedAction.SCOPE_CHANGE.value:
        action = FeedAction.SCOPE_CHANGE
    return FeedRequestContext(
        session_id=(args.get("session") or "").strip() or None,
        query=query,
        action=action,
    )


def _payload(session_id: str, engine: FeedCompositionEngine, result: FeedResult):
    data = result.as_dict()
    data["session_id"] = session_id
    data["state"] = engine.state.value
    data["visible_count"] = len(engine.visible_items)
    return jsonify(data)


def _require_engine(session_id: str) -> FeedCompositionEngine:
    session = get_sessions().get(session_id)
    if session is None:
        abort(404, description=f"Unknown feed session {session_id}")
    return session.engine


@feed_bp.get("/feed")
async def compose_feed():
    context = resolve_feed_context(request)
    session = get_sessions().open(context.session_id)
    logger.debug(
        "Route feed session=%s query='%s' action=%s",
        session.session_id,
        context.query.text,
        context.action.value,
    )
    result = await session.engine.compose(context.query, context.action)
    return _payload(session.session_id, session.engine, result)


@feed_bp.post("/feed/<session_id>/more")
async def load_more(session_id: str):
    engine = _require_engine(session_id)
    result = await engine.load_more()
    return _payload(session_id, engine, result)


@feed_bp.post("/feed/<session_id>/retry")
async def retry(session_id: str):
    engine = _require_engine(session_id)
    result = await engine.retry()
    return _payload(session_id, engine, result)


@feed_bp.get("/feed/<session_id>/state")
async def feed_state(session_id: str):
    engine = _require_engine(session_id)
    return jsonify(engine.snapshot())


@feed_bp.delete("/feed/<session_id>")
async def reset_feed(session_id: str):
    if not get_sessions().close(session_id):
        abort(404, description=f"Unknown feed session {session_id}")
    return "", 204
