from sitedigest import cli
from sitedigest.events import INGEST_REQUESTED
from sitedigest.storage import get_domain_by_hostname, list_domains, list_tasks


def _run(argv, logger):
    args = cli.build_parser().parse_args(argv)
    return args.func(args, logger)


def test_domains_import_and_crawl(conn, logger, tmp_path):
    path = tmp_path / "domains.yml"
    path.write_text("- docs.example.com\n- hostname: api.example.com\n  max_pages: 3\n", encoding="utf-8")

    assert _run(["domains", "import", str(path)], logger) == 0
    assert [domain.hostname for domain in list_domains(conn)] == ["api.example.com", "docs.example.com"]
    assert get_domain_by_hostname(conn, "api.example.com").max_pages == 3

    assert _run(["crawl", "docs.example.com", "--max-pages", "2"], logger) == 0
    task = list_tasks(conn, task_type=INGEST_REQUESTED)[0]
    assert task.payload["type"] == "update"
    assert task.payload["max_pages"] == 2
    assert task.payload["requested_by"] == "cli"


def test_domains_add_rejects_duplicates(conn, logger):
    assert _run(["domains", "add", "https://docs.example.com/"], logger) == 0
    assert _run(["domains", "add", "docs.example.com"], logger) == 1


def test_jobs_cancel_unknown_job(conn, logger):
    assert _run(["jobs", "cancel", "job_missing"], logger) == 1
