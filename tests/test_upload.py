"""
Tests for lcov parsing and the non-fatal coverage upload.
"""

import json
from unittest.mock import Mock

import pytest
import requests

from buildgraph import TaskGraph
from buildgraph.errors import UploadError
from buildsteps import BuildContext
from buildsteps.tasks.test import run_tests, upload_coverage
from buildsteps.upload import CoverallsUploader, FileCoverage, parse_lcov, source_file_payload

from conftest import FakeBundler, FakeCoverage, FakeExecutor


LCOV = """TN:
SF:src/main.ts
DA:1,4
DA:3,0
end_of_record
SF:src/addons/fit/fit.ts
DA:2,1
DA:2,1
end_of_record
"""


class TestLcov:

    def test_parse(self):
        files = parse_lcov(LCOV)

        assert [f.path for f in files] == ["src/main.ts", "src/addons/fit/fit.ts"]
        assert files[0].lines == {1: 4, 3: 0}
        assert files[1].lines == {2: 2}

    def test_malformed_line(self):
        with pytest.raises(UploadError):
            parse_lcov("SF:a.ts\nDA:x,1\nend_of_record\n")

    def test_payload_marks_irrelevant_lines(self, project):
        (project / "src" / "main.ts").write_text("a\nb\nc\nd\n")

        payload = source_file_payload(FileCoverage("src/main.ts", {1: 4, 3: 0}), project)

        assert payload["name"] == "src/main.ts"
        assert payload["coverage"] == [4, None, 0, None]
        assert len(payload["source_digest"]) == 32


class TestCoverallsUploader:

    def test_payload_includes_token_and_job(self, config):
        config.coverage_dir.mkdir(parents=True)
        (config.coverage_dir / "lcov.info").write_text(LCOV)
        uploader = CoverallsUploader(config, env={"COVERALLS_REPO_TOKEN": "secret", "TRAVIS_JOB_ID": "42"})

        payload = uploader.build_payload(uploader.find_summary())

        assert payload["repo_token"] == "secret"
        assert payload["service_job_id"] == "42"
        assert payload["service_name"] == "local"
        assert len(payload["source_files"]) == 2

    def test_missing_summary(self, config):
        with pytest.raises(UploadError):
            CoverallsUploader(config, env={}).find_summary()

    def test_posts_json_file(self, config, monkeypatch):
        config.coverage_dir.mkdir(parents=True)
        (config.coverage_dir / "lcov.info").write_text(LCOV)
        response = Mock()
        response.json.return_value = {"message": "Job #1.1", "url": "https://example.invalid/jobs/1"}
        post = Mock(return_value=response)
        monkeypatch.setattr(requests, "post", post)

        result = CoverallsUploader(config, env={}).upload_sync()

        assert result["message"] == "Job #1.1"
        _, kwargs = post.call_args
        name, body, content_type = kwargs["files"]["json_file"]
        assert content_type == "application/json"
        assert len(json.loads(body)["source_files"]) == 2

    def test_network_failure_becomes_upload_error(self, config, monkeypatch):
        config.coverage_dir.mkdir(parents=True)
        (config.coverage_dir / "lcov.info").write_text(LCOV)
        monkeypatch.setattr(requests, "post", Mock(side_effect=requests.ConnectionError("offline")))

        with pytest.raises(UploadError, match="offline"):
            CoverallsUploader(config, env={}).upload_sync()


class TestUploadDoesNotChangeTestStatus:

    @pytest.mark.asyncio
    async def test_upload_failure_after_passing_tests(self, config, compiled_main, monkeypatch):
        (config.out_root / "main.test.js").write_text("")
        monkeypatch.setattr(requests, "post", Mock(side_effect=requests.ConnectionError("offline")))
        ctx = BuildContext.create(
            config,
            [],
            bundler=FakeBundler(),
            executor=FakeExecutor(),
            coverage=FakeCoverage(),
            uploader=CoverallsUploader(config, env={}),
        )
        graph = TaskGraph()
        graph.register("instrument", [], lambda: ctx.tests.instrument())
        graph.register("run-tests", ["instrument"], lambda: run_tests(ctx))
        graph.register("upload-coverage", ["run-tests"], lambda: upload_coverage(ctx))

        outcome = await graph.run("upload-coverage")

        assert outcome.ok
        assert outcome.executed == ["instrument", "run-tests", "upload-coverage"]
