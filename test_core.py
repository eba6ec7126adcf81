import json
import signal

import httpx
import pytest

from serving_benchmark.core import (
    EXIT_INTERRUPTED,
    SweepOrchestrator,
    build_test_cases,
    exit_code_for,
)
from serving_benchmark.models import RunState
from serving_benchmark.storage import ResultStore

from conftest import PARIS_BODY, chat_handler, is_probe, mock_client


def failing_handler(port=None, probe_ok=True, status_code=500):
    """Answers 200 to probes (unless probe_ok is False) and status_code otherwise.

    When port is given only requests to that port fail.
    """
    calls = []

    def handler(request):
        calls.append(request)
        targeted = port is None or request.url.port == port
        if not targeted or (probe_ok and is_probe(request)):
            return httpx.Response(200, json=PARIS_BODY)
        return httpx.Response(status_code, text="Internal Server Error")

    handler.calls = calls
    return handler


def test_test_case_order(make_config):
    config = make_config(engine="both", token_counts="128,256")
    cases = build_test_cases(config.selected_endpoints(), config.token_counts, config.prompts())

    assert [(c.max_tokens, c.engine, c.prompt_type) for c in cases] == [
        (128, "llama.cpp", "simple"),
        (128, "llama.cpp", "complex"),
        (128, "vLLM", "simple"),
        (128, "vLLM", "complex"),
        (256, "llama.cpp", "simple"),
        (256, "llama.cpp", "complex"),
        (256, "vLLM", "simple"),
        (256, "vLLM", "complex"),
    ]


def test_exit_codes():
    assert exit_code_for(RunState.COMPLETED) == 0
    assert exit_code_for(RunState.ABORTED) == 1
    assert exit_code_for(RunState.INTERRUPTED) == EXIT_INTERRUPTED == 130


async def test_dry_run_sweep_writes_every_result(make_config, tmp_path, monkeypatch):
    def no_network(*args, **kwargs):
        raise AssertionError("dry run must not build a network client")

    monkeypatch.setattr("serving_benchmark.core.ChatCompletionClient", no_network)

    config = make_config(engine="both", token_counts="128,256", dry_run=True)
    store = ResultStore.create_run(tmp_path / "runs", config)
    summary = await SweepOrchestrator(config, store=store).run()

    assert summary.state == RunState.COMPLETED
    assert summary.total_cases == 8
    assert summary.failed_cases == 0

    df = store.load_results()
    assert len(df) == 8
    assert list(df["max_tokens"]) == [128] * 4 + [256] * 4
    assert list(df["engine"][:4]) == ["llama.cpp", "llama.cpp", "vLLM", "vLLM"]
    assert list(df["prompt_type"][:2]) == ["simple", "complex"]
    assert (df["successful_requests"] == 2).all()
    assert (df["avg_tokens"] == 32).all()

    saved = json.loads(store.summary_path.read_text())
    assert saved["state"] == "completed"
    assert saved["total_cases"] == 8


async def test_healthy_endpoint_sweep(make_config, tmp_path, sleep_recorder):
    handler = chat_handler()
    config = make_config(engine="llama", token_counts=[200], repetitions=5)
    store = ResultStore.create_run(tmp_path, config)

    summary = await SweepOrchestrator(config, store=store, client=mock_client(handler), sleep=sleep_recorder).run()

    assert summary.state == RunState.COMPLETED
    # one probe, then five requests for each prompt type
    assert len(handler.calls) == 11
    assert [r.prompt_type for r in summary.results] == ["simple", "complex"]
    for result in summary.results:
        assert result.successful_requests == 5
        assert result.total_requests == 5
        assert result.avg_tokens == 7
        assert result.avg_tokens_per_second > 0
        assert result.min_response_time <= result.avg_response_time <= result.max_response_time
    assert sleep_recorder.delays == []


async def test_failed_batches_do_not_stop_the_sweep(make_config, sleep_recorder):
    handler = failing_handler()
    config = make_config(engine="primary", token_counts=[64], max_retries=3)

    summary = await SweepOrchestrator(config, client=mock_client(handler), sleep=sleep_recorder).run()

    assert summary.state == RunState.COMPLETED
    assert summary.total_cases == 2
    assert summary.failed_cases == 2
    assert all(r.avg_response_time is None for r in summary.results)
    # probe + 2 batches * 2 requests * 3 attempts
    assert len(handler.calls) == 1 + 2 * 2 * 3
    assert exit_code_for(summary.state) == 0


async def test_abort_on_batch_failure(make_config, sleep_recorder):
    handler = failing_handler()
    config = make_config(engine="primary", token_counts=[64, 128], abort_on_batch_failure=True)

    summary = await SweepOrchestrator(config, client=mock_client(handler), sleep=sleep_recorder).run()

    assert summary.state == RunState.ABORTED
    assert summary.total_cases == 1
    assert exit_code_for(summary.state) == 1


async def test_unreachable_endpoint_is_skipped_in_combined_run(make_config, sleep_recorder):
    handler = failing_handler(port=8001, probe_ok=False, status_code=503)
    config = make_config(engine="both", token_counts=[64])

    summary = await SweepOrchestrator(config, client=mock_client(handler), sleep=sleep_recorder).run()

    assert summary.state == RunState.COMPLETED
    assert summary.degraded_engines == ["vLLM"]
    assert {r.engine for r in summary.results} == {"llama.cpp"}
    assert summary.total_cases == 2


async def test_unreachable_endpoint_aborts_single_engine_run(make_config, sleep_recorder):
    handler = failing_handler(port=8001, probe_ok=False, status_code=503)
    config = make_config(engine="vllm", token_counts=[64], max_retries=2)

    summary = await SweepOrchestrator(config, client=mock_client(handler), sleep=sleep_recorder).run()

    assert summary.state == RunState.ABORTED
    assert summary.results == []
    # only the probe attempts went out
    assert len(handler.calls) == 2


async def test_all_probes_failing_aborts_combined_run(make_config, sleep_recorder):
    handler = failing_handler(probe_ok=False)
    config = make_config(engine="both", token_counts=[64], max_retries=1)

    summary = await SweepOrchestrator(config, client=mock_client(handler), sleep=sleep_recorder).run()

    assert summary.state == RunState.ABORTED
    assert summary.degraded_engines == ["llama.cpp", "vLLM"]


async def test_stop_mid_batch_discards_the_batch(make_config, tmp_path):
    config = make_config(engine="primary", token_counts=[64], repetitions=3, dry_run=True)
    store = ResultStore.create_run(tmp_path, config)
    requests = []

    def on_request(test_case, index, total, outcome):
        requests.append(index)
        orchestrator.request_shutdown()

    orchestrator = SweepOrchestrator(config, store=store, request_callback=on_request)
    summary = await orchestrator.run()

    assert summary.state == RunState.INTERRUPTED
    assert requests == [1]
    assert summary.results == []
    assert len(store.load_results()) == 0
    assert json.loads(store.summary_path.read_text())["state"] == "interrupted"
    assert exit_code_for(summary.state) == EXIT_INTERRUPTED


async def test_stop_after_batch_keeps_completed_results(make_config, tmp_path):
    config = make_config(engine="both", token_counts=[64], dry_run=True)
    store = ResultStore.create_run(tmp_path, config)

    def on_batch(result):
        orchestrator.request_shutdown()

    orchestrator = SweepOrchestrator(config, store=store, batch_callback=on_batch)
    summary = await orchestrator.run()

    assert summary.state == RunState.INTERRUPTED
    assert summary.total_cases == 1
    assert len(store.load_results()) == 1


async def test_sigint_interrupts_the_sweep(make_config):
    config = make_config(engine="both", token_counts=[64], dry_run=True)
    previous = signal.getsignal(signal.SIGINT)

    def on_request(test_case, index, total, outcome):
        signal.raise_signal(signal.SIGINT)

    orchestrator = SweepOrchestrator(config, request_callback=on_request)
    summary = await orchestrator.run()

    assert summary.state == RunState.INTERRUPTED
    assert summary.results == []
    assert signal.getsignal(signal.SIGINT) is previous


async def test_sweep_runs_only_once(make_config):
    orchestrator = SweepOrchestrator(make_config(token_counts=[8], dry_run=True))
    await orchestrator.run()

    with pytest.raises(RuntimeError):
        await orchestrator.run()


async def test_second_sigint_stops_immediately(make_config, tmp_path):
    config = make_config(engine="primary", token_counts=[64], repetitions=3, dry_run=True)
    store = ResultStore.create_run(tmp_path, config)
    previous = signal.getsignal(signal.SIGINT)
    requests = []

    def on_request(test_case, index, total, outcome):
        requests.append(index)
        signal.raise_signal(signal.SIGINT)
        signal.raise_signal(signal.SIGINT)

    orchestrator = SweepOrchestrator(config, store=store, request_callback=on_request)
    with pytest.raises(KeyboardInterrupt):
        await orchestrator.run()

    assert requests == [1]
    assert orchestrator.state == RunState.INTERRUPTED
    assert json.loads(store.summary_path.read_text())["state"] == "interrupted"
    assert signal.getsignal(signal.SIGINT) is previous
