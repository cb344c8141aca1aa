import json

import pytest

from strikeflow.cli import main


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ('STRIKEFLOW_ENV', 'STRIKEFLOW_DB_PATH'):
        monkeypatch.delenv(name, raising=False)


def write_json(path, data):
    path.write_text(json.dumps(data))
    return str(path)


def test_config_command(capsys):
    assert main(['--env', 'production', 'config']) == 0

    data = json.loads(capsys.readouterr().out)
    assert data['environment'] == 'production'
    assert 'config_hash' in data


def test_missing_input_file(tmp_path):
    assert main(['process', str(tmp_path / 'absent.json')]) == 2


def test_bad_price_argument(tmp_path):
    signals = write_json(tmp_path / 'signals.json', [])
    with pytest.raises(SystemExit):
        main(['process', signals, '--price', 'SPY'])


def test_process_then_query_failures(tmp_path, capsys):
    db = str(tmp_path / 'trades.db')
    signals = write_json(tmp_path / 'signals.json', [{'symbol': 'SPY'}, {'action': 'BUY'}])
    context = write_json(tmp_path / 'context.json', {'vix': 18.0, 'trend': 'bullish'})

    assert main(['--db', db, 'process', signals, '--context', context, '--price', 'SPY=2.5']) == 1
    results = json.loads(capsys.readouterr().out)
    assert [r['stage'] for r in results] == ['NORMALIZATION', 'NORMALIZATION']

    assert main(['--db', db, 'failures', '--stage', 'NORMALIZATION']) == 0
    failures = json.loads(capsys.readouterr().out)
    assert len(failures) == 2


def test_monitor_and_analytics_on_empty_store(tmp_path, capsys):
    db = str(tmp_path / 'trades.db')

    assert main(['--db', db, 'monitor', '--dry-run']) == 0
    assert json.loads(capsys.readouterr().out) == []

    assert main(['--db', db, 'analytics']) == 0
    assert json.loads(capsys.readouterr().out)['total_trades'] == 0
