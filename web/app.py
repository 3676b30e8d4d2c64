from flask import Flask, jsonify, request
from filterforge.engine import get_filter_engine
from filterforge.errors import public_error_message
from filterforge.patterns import is_valid_pattern, to_match_pattern
from filterforge.filterlist_store import SITE_KINDS
from filterforge.logutil import log_exception_throttled

import dataclasses
import logging
import os
from typing import Any, Dict

app = Flask(__name__)
logger = logging.getLogger(__name__)

# Import payloads carry whole rule sets; keep the limit generous but bounded.
try:
    app.config.setdefault(
        'MAX_CONTENT_LENGTH',
        int((os.environ.get('MAX_CONTENT_LENGTH') or str(16 * 1024 * 1024)).strip()),
    )
except ValueError:
    app.config.setdefault('MAX_CONTENT_LENGTH', 16 * 1024 * 1024)

engine = get_filter_engine()

_disable_background = (os.environ.get('DISABLE_BACKGROUND') or '').strip() == '1'

if not _disable_background:
    # Downloads due lists, recompiles on settings changes and retries failed syncs.
    try:
        engine.start_background()
    except Exception:
        log_exception_throttled(
            logger,
            'app.start_background',
            interval_seconds=300.0,
            message='Failed to start the filter engine background loop',
        )


def _json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValueError('Request body must be a JSON object.')
    return payload


def _bad_request(e: Exception):
    return jsonify({'ok': False, 'error': public_error_message(e)}), 400


def _recompile(reason: str) -> None:
    engine.request_recompile(reason, wait=True)


def _as_list(value: Any, name: str):
    if value is None:
        return None
    if isinstance(value, str):
        value = [v for v in value.split(',') if v.strip()]
    if not isinstance(value, (list, tuple)):
        raise ValueError(f'{name} must be a list.')
    return [str(v).strip() for v in value if str(v).strip()]


@app.route('/health', methods=['GET'])
def health():
    return jsonify({'ok': True}), 200


@app.route('/api/status', methods=['GET'])
def api_status():
    return jsonify(engine.status()), 200


@app.route('/api/lists', methods=['GET', 'POST'])
def api_lists():
    store = engine.store
    if request.method == 'POST':
        try:
            payload = _json_body()
            enabled = payload.get('enabled')
            if not isinstance(enabled, dict):
                raise ValueError('Expected {"enabled": {"<list key>": true|false}}.')
            known = {st.key for st in store.list_statuses()}
            unknown = sorted(k for k in enabled if k not in known)
            if unknown:
                raise ValueError(f"Unknown list(s): {', '.join(unknown)}.")
            store.set_enabled({str(k): bool(v) for k, v in enabled.items()})
        except ValueError as e:
            return _bad_request(e)
        _recompile('lists toggled')

    return jsonify({'lists': [dataclasses.asdict(st) for st in store.list_statuses()]}), 200


@app.route('/api/lists/sources', methods=['POST'])
def api_list_add():
    store = engine.store
    try:
        payload = _json_body()
        key = store.add_list(
            str(payload.get('key') or ''),
            str(payload.get('url') or ''),
            str(payload.get('category') or ''),
            name=str(payload.get('name') or ''),
            fmt=str(payload.get('format') or 'adblock'),
            enabled=bool(payload.get('enabled', True)),
        )
    except ValueError as e:
        return _bad_request(e)
    # New sources are fetched by the next background poll.
    store.request_refresh_now()
    return jsonify({'ok': True, 'list': dataclasses.asdict(store.get_status(key))}), 201


@app.route('/api/lists/sources/<key>', methods=['DELETE'])
def api_list_remove(key: str):
    try:
        removed = engine.store.remove_list(key)
    except ValueError as e:
        return _bad_request(e)
    if not removed:
        return jsonify({'ok': False, 'error': 'Filter list not found.'}), 404
    _recompile('list removed')
    return jsonify({'ok': True}), 200


@app.route('/api/lists/refresh', methods=['POST'])
def api_lists_refresh():
    store = engine.store
    # The background loop notices the request and force-downloads every enabled list.
    store.request_refresh_now()
    any_enabled = any(st.enabled for st in store.list_statuses())
    return jsonify({'ok': True, 'queued': True, 'lists_enabled': any_enabled}), 202


@app.route('/api/custom-rules', methods=['GET', 'POST'])
def api_custom_rules():
    store = engine.store
    if request.method == 'POST':
        try:
            payload = _json_body()
            pattern = str(payload.get('pattern') or '').strip()
            if pattern and not is_valid_pattern(to_match_pattern(pattern)):
                raise ValueError('Pattern does not translate to a valid match expression.')
            rule = store.add_custom_rule(
                pattern,
                str(payload.get('type') or 'block'),
                resource_types=_as_list(payload.get('resource_types'), 'resource_types'),
                domains=_as_list(payload.get('domains'), 'domains'),
            )
        except ValueError as e:
            return _bad_request(e)
        _recompile('custom rule added')
        return jsonify({'ok': True, 'rule': rule.to_dict()}), 201

    return jsonify({'rules': [r.to_dict() for r in store.list_custom_rules()]}), 200


@app.route('/api/custom-rules/<int:rule_id>', methods=['DELETE'])
def api_custom_rule_delete(rule_id: int):
    if not engine.store.remove_custom_rule(rule_id):
        return jsonify({'ok': False, 'error': 'Custom rule not found.'}), 404
    _recompile('custom rule removed')
    return jsonify({'ok': True}), 200


@app.route('/api/sites/<kind>', methods=['GET', 'POST', 'DELETE'])
def api_sites(kind: str):
    if kind not in SITE_KINDS:
        return jsonify({'ok': False, 'error': 'Unknown site list.'}), 404
    store = engine.store
    if request.method in ('POST', 'DELETE'):
        try:
            payload = _json_body()
            domain = str(payload.get('domain') or request.args.get('domain') or '').strip()
            if not domain:
                raise ValueError('domain is required.')
            changed = store.set_site(kind, domain, present=request.method == 'POST')
        except ValueError as e:
            return _bad_request(e)
        if changed:
            _recompile(f'{kind} changed')

    return jsonify({'kind': kind, 'domains': store.list_sites(kind)}), 200


@app.route('/api/settings', methods=['GET', 'POST'])
def api_settings():
    store = engine.store
    if request.method == 'POST':
        try:
            payload = _json_body()
            enabled = payload.get('enabled')
            if enabled is not None and not isinstance(enabled, bool):
                raise ValueError('enabled must be true or false.')
            level = payload.get('blocking_level')
            store.set_settings(
                enabled=enabled,
                blocking_level=str(level) if level is not None else None,
                categories=_as_list(payload.get('categories'), 'categories'),
            )
        except ValueError as e:
            return _bad_request(e)
        _recompile('settings changed')

    settings = store.get_settings()
    settings['effective_categories'] = store.enabled_categories()
    return jsonify(settings), 200


@app.route('/api/cosmetics', methods=['GET'])
def api_cosmetics():
    domain = (request.args.get('domain') or '').strip().lower()
    if not domain:
        return jsonify({'ok': False, 'error': 'domain is required.'}), 400
    return jsonify({'domain': domain, 'selectors': engine.cosmetics_for(domain)}), 200


@app.route('/api/match', methods=['GET'])
def api_match():
    url = (request.args.get('url') or '').strip()
    if not url:
        return jsonify({'ok': False, 'error': 'url is required.'}), 400
    matcher = getattr(engine.backend, 'match', None)
    if matcher is None:
        return jsonify({'ok': False, 'error': 'The configured backend cannot evaluate URLs.'}), 501
    rec = matcher(
        url,
        initiator=(request.args.get('initiator') or '').strip() or None,
        resource_type=(request.args.get('type') or 'script').strip(),
    )
    action = ((rec or {}).get('action') or {}).get('type')
    return jsonify({'url': url, 'action': action, 'rule': rec}), 200


@app.route('/api/export', methods=['GET'])
def api_export():
    return jsonify(engine.store.export_user_data()), 200


@app.route('/api/import', methods=['POST'])
def api_import():
    try:
        payload = _json_body()
        if not payload:
            raise ValueError('Import data must be a non-empty JSON object.')
        engine.store.import_user_data(payload)
    except ValueError as e:
        return _bad_request(e)
    _recompile('user data imported')
    return jsonify({'ok': True}), 200
