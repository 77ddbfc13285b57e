from transcript_hub.jobs.models import Job, JobOptions, JobTargets, Progress, QuarterRef
from transcript_hub.jobs.resolver import (
    TickerResolver,
    UnsummarizedResolver,
    WorkItem,
    parse_ticker_file,
    resolver_for,
)


def _job(job_type="bulk_fetch", **targets):
    return Job(
        id="j",
        job_type=job_type,
        status="pending",
        targets=JobTargets(**targets),
        options=JobOptions(),
        progress=Progress(),
    )


def test_work_item_keys():
    assert WorkItem("AAA").key == "AAA"
    assert WorkItem("AAA", 2024, 3).key == "AAA-2024-Q3"
    assert not WorkItem("AAA").explicit


def test_lazy_items_one_per_ticker():
    resolver = TickerResolver(_job(tickers=["aaa", " bbb ", "AAA"], quarter_count=4))
    assert resolver.total() == 2
    assert list(resolver.items()) == [WorkItem("AAA"), WorkItem("BBB")]


def test_explicit_items_cross_product_in_input_order():
    job = _job(tickers=["BBB", "AAA"], quarters=[QuarterRef(2024, 1), QuarterRef(2023, 4)])
    resolver = resolver_for(job)
    assert isinstance(resolver, TickerResolver)
    assert resolver.total() == 4
    assert [i.key for i in resolver.items()] == ["BBB-2024-Q1", "BBB-2023-Q4", "AAA-2024-Q1", "AAA-2023-Q4"]


def test_summary_jobs_replay_frozen_keys():
    job = _job("bulk_summary", tickers=["AAA"], transcript_keys=["AAA-2024-Q2", "AAA-2023-Q1"])
    resolver = resolver_for(job)
    assert isinstance(resolver, UnsummarizedResolver)
    assert [i.key for i in resolver.items()] == ["AAA-2024-Q2", "AAA-2023-Q1"]


def test_parse_ticker_file_formats():
    content = "aapl\tApple Inc\nMSFT Microsoft\n\n# comment\nGOOG,\nAAPL\nTOOLONGTICKER1\n"
    assert parse_ticker_file(content) == ["AAPL", "MSFT", "GOOG"]


def test_parse_ticker_file_empty():
    assert parse_ticker_file("\n\n  \n") == []
