"""
Tests for the Strikeflow REST API
"""

import pytest
from fastapi.testclient import TestClient

from strikeflow.pipeline.api import create_app

from conftest import SESSION_OPEN_UTC, create_raw_signal


@pytest.fixture
def client(runtime):
    return TestClient(create_app(runtime))


def open_position(client) -> dict:
    response = client.post("/webhook", json=create_raw_signal())
    assert response.status_code == 200
    return response.json()['position']


class TestSignalEndpoints:

    def test_webhook_opens_position(self, client):
        response = client.post("/webhook", json=create_raw_signal())

        data = response.json()
        assert response.status_code == 200
        assert data['success'] is True
        assert data['stage'] == 'EXECUTION'
        assert data['decision']['decision'] == 'ENTER'
        assert data['position']['symbol'] == 'SPY'

    def test_malformed_payload_is_400(self, client):
        response = client.post("/webhook", json={'action': 'BUY'})

        assert response.status_code == 400
        assert response.json()['stage'] == 'NORMALIZATION'

    def test_later_stage_failure_is_200(self, client):
        response = client.post("/webhook", json=create_raw_signal(confluence=0.1))

        assert response.status_code == 200
        assert response.json()['success'] is False
        assert response.json()['failure_reason'] == "Insufficient confluence"

    def test_queued_webhook(self, client, runtime):
        response = client.post("/webhook", params={'queue': 'true'}, json=create_raw_signal())

        assert response.status_code == 202
        assert response.json()['queued'] is True
        assert runtime.store.count_pending_signals() == 1

    def test_batch(self, client):
        response = client.post("/webhook/batch", json={
            'signals': [create_raw_signal(), {'symbol': 'SPY'}, create_raw_signal()],
        })

        data = response.json()
        assert response.status_code == 200
        assert data['submitted'] == 3
        assert data['succeeded'] == 1
        assert data['failed'] == 2
        assert [r['stage'] for r in data['results']] == ['EXECUTION', 'NORMALIZATION', 'DEDUPLICATION']

    def test_batch_rejects_bad_deadline(self, client):
        response = client.post("/webhook/batch", json={'signals': [], 'deadline_seconds': 0})
        assert response.status_code == 422


class TestMarketDataEndpoints:

    def test_context_push(self, client, runtime):
        response = client.post("/context", json={
            'vix': 24.5, 'trend': 'BEARISH', 'regime': 'HIGH_VOL',
            'timestamp': SESSION_OPEN_UTC.isoformat(),
        })

        assert response.status_code == 200
        context = runtime.market_data.get_context()
        assert context.vix == 24.5
        assert context.regime.value == 'HIGH_VOL'

    def test_positioning_push(self, client, runtime):
        response = client.post("/positioning", json={
            'symbol': 'spy',
            'gex': {'strength': 0.8, 'direction': 'call', 'timeframe': '5m'},
            'put_call_ratio': 0.7,
        })

        assert response.status_code == 200
        positioning = runtime.market_data.get_positioning('SPY')
        assert positioning.gex.direction == 'CALL'
        assert positioning.put_call_ratio == 0.7

    def test_price_push(self, client, runtime):
        response = client.post("/prices/qqq", json={'price': 1.75})

        assert response.json()['symbol'] == 'QQQ'
        assert runtime.market_data.get_current_price('QQQ') == 1.75

    def test_non_positive_price_rejected(self, client):
        assert client.post("/prices/SPY", json={'price': 0}).status_code == 422


class TestPositionEndpoints:

    def test_list_and_get(self, client):
        position = open_position(client)

        listing = client.get("/positions").json()
        assert listing['count'] == 1
        assert listing['positions'][0]['id'] == position['id']

        detail = client.get(f"/positions/{position['id']}").json()
        assert detail['position']['status'] == 'OPEN'
        assert detail['lots'] == []

        assert client.get("/positions", params={'status': 'CLOSED'}).json()['count'] == 0

    def test_unknown_position_is_404(self, client):
        assert client.get("/positions/nope").status_code == 404
        assert client.post("/positions/nope/close").status_code == 404

    def test_manual_close(self, client):
        position = open_position(client)

        response = client.post(f"/positions/{position['id']}/close", json={'exit_price': 3.0})

        data = response.json()
        assert response.status_code == 200
        assert data['fully_closed'] is True
        assert data['realized_pnl'] == pytest.approx(3.0 - 2.50 * 1.0005)

        again = client.post(f"/positions/{position['id']}/close", json={'exit_price': 3.0})
        assert again.status_code == 409

    def test_close_more_than_open_is_409(self, client):
        position = open_position(client)
        response = client.post(f"/positions/{position['id']}/close", json={'quantity': 5})
        assert response.status_code == 409


class TestMonitorAndAudit:

    def test_exit_monitor_run_closes_stop_loss(self, client):
        open_position(client)
        client.post("/prices/SPY", json={'price': 1.50})

        alerts = client.get("/exit-alerts").json()
        assert alerts['count'] == 1
        assert alerts['alerts'][0]['priority'] == 'CRITICAL'

        report = client.post("/exit-monitor/run").json()
        assert report['critical_alerts'] == 1
        assert report['exits_executed'] == 1
        assert client.get("/positions", params={'status': 'OPEN'}).json()['count'] == 0

    def test_failures_and_decisions(self, client):
        client.post("/webhook", json={'symbol': 'SPY'})
        client.post("/webhook", json=create_raw_signal())

        failures = client.get("/failures", params={'stage': 'NORMALIZATION'}).json()
        assert failures['count'] == 1

        decisions = client.get("/decisions").json()
        assert [d['decision'] for d in decisions['decisions']] == ['ENTER']

    def test_analytics(self, client):
        position = open_position(client)
        client.post(f"/positions/{position['id']}/close", json={'exit_price': 3.0})

        data = client.get("/analytics").json()
        assert data['realized']['total_trades'] == 1
        assert data['realized']['winning_trades'] == 1
        assert data['open_positions'] == 0


class TestHealthAndConfig:

    def test_health(self, client):
        client.post("/webhook", json=create_raw_signal())

        data = client.get("/health").json()
        assert data['health']['signals_processed'] == 1
        assert data['exit_monitor_running'] is False
        assert data['worker']['processed'] == 0
        assert 'timestamp' in data

    def test_config(self, client, runtime):
        data = client.get("/config").json()
        assert data['config_hash'] == runtime.config_hash
        assert data['config']['environment'] == runtime.config.environment
