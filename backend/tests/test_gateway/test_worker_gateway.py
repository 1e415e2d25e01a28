"""
Unit tests for app.gateway.worker_gateway.WorkerGateway

requests.Session.post is patched on the gateway's sessions, so nothing leaves
the process.

  payloads        — chatId / phase / action / timestamp plus phase fields
  timeouts        — (connect, per-phase read) tuple
  phase 3         — dedicated keep-alive session with a large pool
  error mapping   — config, timeout, connection, non-2xx, non-JSON
"""
from unittest.mock import MagicMock, patch

import pytest
import requests

from app.config import Settings
from app.gateway.errors import (
    GatewayConfigError,
    GatewayHttpError,
    GatewayNoResponse,
    GatewayTimeout,
)
from app.gateway.worker_gateway import PHASE_ACTIONS, WorkerGateway


# ── Helpers ───────────────────────────────────────────────────────────────────

def _settings(**overrides):
    values = {f'N8N_WEBHOOK_PHASE{n}_URL': f'http://worker/phase{n}' for n in range(1, 7)}
    values.update(overrides)
    return Settings(_env_file=None, **values)


def _response(status_code=200, body=None, reason='OK'):
    resp = MagicMock()
    resp.status_code = status_code
    resp.reason = reason
    resp.json.return_value = body if body is not None else {'ok': True}
    return resp


# ── Payloads and timeouts ─────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_phase1_payload_and_timeout():
    gateway = WorkerGateway(_settings())

    with patch.object(gateway._session, 'post', return_value=_response(body=[{'output': {}}])) as post:
        response = await gateway.call_phase1('chat-1', 'the problem')

    assert response.data == [{'output': {}}]
    assert response.status_code == 200
    url = post.call_args.args[0]
    payload = post.call_args.kwargs['json']
    assert url == 'http://worker/phase1'
    assert payload['chatId'] == 'chat-1'
    assert payload['phase'] == 1
    assert payload['action'] == 'enhance_prompt'
    assert payload['originalInput'] == 'the problem'
    assert 'timestamp' in payload
    assert post.call_args.kwargs['timeout'] == (10.0, 150.0)


@pytest.mark.asyncio
async def test_phase2_wire_field_names():
    gateway = WorkerGateway(_settings())

    with patch.object(gateway._session, 'post', return_value=_response()) as post:
        await gateway.call_phase2('chat-1', 'refined', [{'id': 1, 'title': 't'}], [0.5])

    payload = post.call_args.kwargs['json']
    assert payload['action'] == 'process_research'
    assert payload['refined_problem'] == 'refined'
    assert payload['subtopics'] == [{'id': 1, 'title': 't'}]
    assert payload['refine_problem_embedding'] == [0.5]
    assert post.call_args.kwargs['timeout'] == (10.0, 180.0)


@pytest.mark.asyncio
async def test_phase3_uses_pooled_keep_alive_session():
    gateway = WorkerGateway(_settings())

    with patch.object(gateway._session, 'post') as default_post, \
            patch.object(gateway._pdf_session, 'post', return_value=_response()) as pdf_post:
        await gateway.call_phase3('chat-1', ['http://arxiv.org/pdf/1'])

    default_post.assert_not_called()
    payload = pdf_post.call_args.kwargs['json']
    assert payload['action'] == 'process_pdfs'
    assert payload['pdfLinks'] == ['http://arxiv.org/pdf/1']
    assert pdf_post.call_args.kwargs['timeout'] == (10.0, 1200.0)
    assert gateway._pdf_session.headers['Connection'] == 'keep-alive'
    assert gateway._pdf_session.get_adapter('https://worker')._pool_maxsize == 50


@pytest.mark.asyncio
@pytest.mark.parametrize('phase', [4, 5, 6])
async def test_late_phases_send_refined_problem(phase):
    gateway = WorkerGateway(_settings())
    call = getattr(gateway, f'call_phase{phase}')

    with patch.object(gateway._session, 'post', return_value=_response()) as post:
        await call('chat-1', 'refined')

    payload = post.call_args.kwargs['json']
    assert payload['action'] == PHASE_ACTIONS[phase]
    assert payload['refinedProblem'] == 'refined'
    assert post.call_args.kwargs['timeout'] == (10.0, 300.0)


@pytest.mark.asyncio
async def test_timeout_override_from_settings():
    gateway = WorkerGateway(_settings(WORKER_TIMEOUT_PHASE4='42'))

    with patch.object(gateway._session, 'post', return_value=_response()) as post:
        await gateway.call_phase4('chat-1', 'refined')

    assert post.call_args.kwargs['timeout'] == (10.0, 42.0)


# ── Error mapping ─────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_unconfigured_endpoint():
    gateway = WorkerGateway(_settings(N8N_WEBHOOK_PHASE4_URL=''))

    with patch.object(gateway._session, 'post') as post:
        with pytest.raises(GatewayConfigError, match='N8N_WEBHOOK_PHASE4_URL is not configured'):
            await gateway.call_phase4('chat-1', 'refined')

    post.assert_not_called()


@pytest.mark.asyncio
async def test_timeout_maps_to_gateway_timeout():
    gateway = WorkerGateway(_settings())

    with patch.object(gateway._session, 'post', side_effect=requests.exceptions.ReadTimeout()):
        with pytest.raises(GatewayTimeout, match='timed out') as exc_info:
            await gateway.call_phase1('chat-1', 'the problem')

    assert exc_info.value.phase == 1


@pytest.mark.asyncio
async def test_connection_error_maps_to_no_response():
    gateway = WorkerGateway(_settings())

    with patch.object(gateway._session, 'post', side_effect=requests.exceptions.ConnectionError('refused')):
        with pytest.raises(GatewayNoResponse, match='no response received'):
            await gateway.call_phase2('chat-1', 'refined', [], None)


@pytest.mark.asyncio
@pytest.mark.parametrize('status', [400, 404, 500, 503])
async def test_non_2xx_maps_to_http_error(status):
    gateway = WorkerGateway(_settings())

    with patch.object(gateway._session, 'post', return_value=_response(status, reason='Nope')):
        with pytest.raises(GatewayHttpError, match=f'status {status}') as exc_info:
            await gateway.call_phase5('chat-1', 'refined')

    assert exc_info.value.status_code == status


@pytest.mark.asyncio
async def test_non_json_body_maps_to_http_error():
    gateway = WorkerGateway(_settings())
    resp = _response()
    resp.json.side_effect = ValueError('Expecting value')

    with patch.object(gateway._session, 'post', return_value=resp):
        with pytest.raises(GatewayHttpError, match='non-JSON'):
            await gateway.call_phase6('chat-1', 'refined')


def test_ping_reports_configured_endpoints():
    gateway = WorkerGateway(_settings(N8N_WEBHOOK_PHASE6_URL=''))

    assert gateway.ping() == {
        'phase1': True, 'phase2': True, 'phase3': True,
        'phase4': True, 'phase5': True, 'phase6': False,
    }
    gateway.close()
