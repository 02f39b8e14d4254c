from merchant_onboarding.observability import metrics


def test_counters_and_latency_percentiles(fake_redis):
    for ms in (10, 20, 30, 40):
        metrics.increment_refresh_attempt()
        metrics.record_refresh_latency(ms)
    for _ in range(3):
        metrics.increment_refresh_success()
    metrics.increment_refresh_failed()
    metrics.increment_forced_logout()
    metrics.increment_verification_started()
    metrics.increment_verification_poll()
    metrics.increment_verification_poll()

    snap = metrics.get_metrics_snapshot()

    assert snap["refresh_attempts"] == 4
    assert snap["refresh_success_rate"] == 75.0
    assert snap["p50_refresh_latency_ms"] == 20.0
    assert snap["p95_refresh_latency_ms"] == 40.0
    assert snap["forced_logouts"] == 1
    assert snap["verification_polls"] == 2
    assert snap["verification_expired"] == 0


def test_storage_outage_never_raises(fake_redis):
    fake_redis.fail = True

    metrics.increment_refresh_attempt()
    metrics.record_refresh_latency(5)

    assert metrics.get_metrics_snapshot()["unavailable"] is True


def test_latency_samples_are_capped(fake_redis):
    for ms in range(metrics._MAX_SAMPLES + 50):
        metrics.record_refresh_latency(ms)

    assert len(fake_redis.store[metrics.K_REFRESH_LAT]) == metrics._MAX_SAMPLES
