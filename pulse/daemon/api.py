"""HTTP API for the Pulse daemon."""

import json
from typing import Any, Dict, Optional

from aiohttp import web
from loguru import logger

from .bus import (
    Event, ITEM_CREATED, NOW_ACTION_TAKEN, NOW_COMPUTED, NOW_DISMISSED,
    NOW_FETCH_FAILED, USER_EVENT_LOGGED,
)
from .error_handling import BundleFetchError, ErrorEvent, ErrorSeverity, StoreError
from .models import CANDIDATE_KINDS, DEFER_NOW, EXECUTED_ACTION, OVERRIDE_NOW
from .results import FetchErrorState, describe, safe_compute_now


def create_api_app(daemon) -> web.Application:
    """Create the aiohttp application with routes."""
    app = web.Application()
    app['daemon'] = daemon

    app.router.add_post('/now/compute', handle_compute)
    app.router.add_post('/now/execute', handle_execute)
    app.router.add_get('/now', handle_now)
    app.router.add_post('/now/events', handle_log_event)
    app.router.add_post('/now/dismiss', handle_dismiss)
    app.router.add_post('/items', handle_create_item)
    app.router.add_get('/status', handle_status)
    app.router.add_get('/health', handle_health)

    return app


def _error(code: str, message: str, status: int) -> web.Response:
    return web.json_response({'error': {'code': code, 'message': message}}, status=status)


async def _read_body(request: web.Request) -> Optional[Dict[str, Any]]:
    """Return the JSON object body, or None if it is not one."""
    try:
        data = await request.json()
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


def _emit(request: web.Request, event_type: str, data: Dict[str, Any]) -> None:
    request.app['daemon'].event_bus.emit_nowait(Event(type=event_type, data=data, source="api"))


async def handle_compute(request: web.Request) -> web.Response:
    """Compute a NowResult for a caller-supplied bundle."""
    data = await _read_body(request)
    if data is None:
        return _error('invalid_request', 'body must be a JSON object', 400)

    bundle = data.get('bundle', data)
    result = safe_compute_now(bundle)
    logger.debug(f"Computed supplied bundle: {describe(result)}")
    _emit(request, NOW_COMPUTED, {'status': result.status, 'source': 'compute'})
    return web.json_response(result.to_dict())


async def handle_now(request: web.Request) -> web.Response:
    """Assemble the user's bundle from the vault and compute."""
    daemon = request.app['daemon']
    user_id = request.query.get('user_id')
    if not user_id:
        return _error('invalid_request', 'user_id is required', 400)

    try:
        bundle = await daemon.assembler.assemble(user_id)
    except StoreError as e:
        return _error('invalid_request', str(e), 400)
    except BundleFetchError as e:
        logger.error(str(e))
        _emit(request, NOW_FETCH_FAILED, ErrorEvent.from_exception(
            "bundle", e, ErrorSeverity.HIGH, user_id=user_id, attempts=e.attempts
        ).to_dict())
        return web.json_response(FetchErrorState.from_error(e).to_dict(), status=503)

    result = safe_compute_now(bundle)
    daemon.stats['compute_count'] += 1
    logger.debug(f"Now for {user_id}: {describe(result)}")
    _emit(request, NOW_COMPUTED, {'user_id': user_id, 'status': result.status})
    return web.json_response(result.to_dict())


async def handle_execute(request: web.Request) -> web.Response:
    """Apply a confirmed action; success is recorded as EXECUTED_ACTION."""
    daemon = request.app['daemon']
    data = await _read_body(request)
    if data is None:
        return _error('invalid_request', 'body must be a JSON object', 400)
    user_id = data.get('user_id')
    if not user_id:
        return _error('invalid_request', 'user_id is required', 400)

    command = {'op': data.get('op'), 'ref_id': data.get('ref_id')}
    result = await daemon.executor.execute(user_id, command)
    if result.ok:
        # Already applied, so history is best-effort
        try:
            await daemon.event_log.log_user_event(user_id, EXECUTED_ACTION, command)
        except (OSError, StoreError):
            logger.exception(f"Applied {command['op']} {command['ref_id']} for {user_id} but could not record it")
        daemon.stats['execute_count'] += 1
        _emit(request, NOW_ACTION_TAKEN, {
            'user_id': user_id, 'action_id': command['op'], 'source': 'primary',
        })
    return web.json_response(result.to_dict())


async def handle_log_event(request: web.Request) -> web.Response:
    """Append a DEFER_NOW / OVERRIDE_NOW / EXECUTED_ACTION event."""
    daemon = request.app['daemon']
    data = await _read_body(request)
    if data is None:
        return _error('invalid_request', 'body must be a JSON object', 400)
    user_id = data.get('user_id')
    if not user_id:
        return _error('invalid_request', 'user_id is required', 400)

    try:
        event = await daemon.event_log.log_user_event(
            user_id, data.get('type'), data.get('payload')
        )
    except StoreError as e:
        return _error('invalid_request', str(e), 400)

    _emit(request, USER_EVENT_LOGGED, {'user_id': user_id, 'type': event.type})
    if event.type in (DEFER_NOW, OVERRIDE_NOW):
        _emit(request, NOW_ACTION_TAKEN, {
            'user_id': user_id,
            'action_id': 'defer' if event.type == DEFER_NOW else 'wake',
            'source': 'secondary',
        })
    return web.json_response(event.to_dict(), status=201)


async def handle_dismiss(request: web.Request) -> web.Response:
    """Count a dismissal of a candidate key."""
    daemon = request.app['daemon']
    data = await _read_body(request)
    if data is None:
        return _error('invalid_request', 'body must be a JSON object', 400)
    user_id = data.get('user_id')
    if not user_id:
        return _error('invalid_request', 'user_id is required', 400)

    try:
        count = await daemon.event_log.record_dismissal(user_id, data.get('key'))
    except StoreError as e:
        return _error('invalid_request', str(e), 400)

    _emit(request, NOW_DISMISSED, {'user_id': user_id, 'key': data['key'], 'count': count})
    return web.json_response({'key': data['key'], 'count': count})


async def handle_create_item(request: web.Request) -> web.Response:
    """Create an action, decision, blocker or session."""
    daemon = request.app['daemon']
    data = await _read_body(request)
    if data is None:
        return _error('invalid_request', 'body must be a JSON object', 400)
    user_id = data.get('user_id')
    kind = data.get('kind')
    if not user_id:
        return _error('invalid_request', 'user_id is required', 400)
    if kind not in CANDIDATE_KINDS:
        return _error('invalid_request', f'kind must be one of {list(CANDIDATE_KINDS)}', 400)

    try:
        item = await daemon.store.create_item(
            user_id,
            kind,
            data.get('title'),
            status=data.get('status'),
            priority=data.get('priority'),
            project=data.get('project'),
            due_at=data.get('due_at'),
            body=data.get('body') or "",
        )
    except StoreError as e:
        return _error('invalid_request', str(e), 400)

    _emit(request, ITEM_CREATED, {'user_id': user_id, 'kind': kind, 'id': item.id})
    return web.json_response({'kind': kind, **item.to_dict()}, status=201)


async def handle_status(request: web.Request) -> web.Response:
    return web.json_response(request.app['daemon'].get_status())


async def handle_health(request: web.Request) -> web.Response:
    return web.json_response({'status': 'ok'})
