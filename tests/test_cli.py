from __future__ import annotations

import json
import logging

import pytest

from arr_conversion import cli
from arr_conversion.conversion import PollOutcome, PollResult, SubmitResult
from tests.conftest import CONN_STR, DummyHTTPResponse, DummyServiceClient, DummySession

CONVERTED_ASSET = {
    "storageAccountName": "arrstorage",
    "blobContainerName": "arroutput",
    "assetFilePath": "converted/box.arrAsset",
}


@pytest.fixture
def service(monkeypatch):
    svc = DummyServiceClient()
    monkeypatch.setattr(cli, "get_service_client", lambda settings: svc)
    return svc


@pytest.fixture
def logger():
    return logging.getLogger("arr_conversion")


def _token():
    return DummyHTTPResponse(200, {"AccessToken": "tok"})


def test_no_stage_flags_runs_every_stage():
    args = cli._parse_args([])
    assert args.upload and args.convert and not args.conversion_status


def test_status_requires_id():
    with pytest.raises(SystemExit):
        cli._parse_args(["--conversion-status"])


def test_full_workflow_uploads_submits_and_polls(settings, service, logger, caplog):
    args = cli._parse_args(["--poll-interval", "0"])
    session = DummySession(
        post_queue=[DummyHTTPResponse(201, {"conversionId": "conv-1"})],
        get_queue=[
            _token(),
            DummyHTTPResponse(200, {"status": "Running"}),
            DummyHTTPResponse(200, {"status": "Success", "convertedAsset": CONVERTED_ASSET}),
        ],
    )

    with caplog.at_level(logging.INFO, logger="arr_conversion"):
        code = cli.run(args, settings, logger, session=session)

    assert code == 0
    uploaded = [u["name"] for u in service.containers["arrinput"].uploads]
    assert uploaded == ["models/box.fbx", "models/textures/wood.png"]
    assert "arroutput" in service.containers
    post = [c for c in session.calls if c[0] == "POST"][0]
    assert post[1].endswith("/conversions/create")
    assert "converted/box.arrAsset" in caplog.text
    assert "Read SAS URL" in caplog.text


def test_sas_variant_generates_tokens_before_submission(settings, service, logger):
    args = cli._parse_args(["--convert", "--use-container-sas", "--poll-interval", "0"])
    session = DummySession(
        post_queue=[DummyHTTPResponse(201, {"conversionId": "conv-2"})],
        get_queue=[_token(), DummyHTTPResponse(200, {"status": "Success", "convertedAsset": CONVERTED_ASSET})],
    )

    assert cli.run(args, settings, logger, session=session) == 0

    _, url, kwargs = session.calls[1]
    assert url.endswith("/conversions/createWithSharedAccessSignature")
    assert "sp=rl" in kwargs["json"]["input"]["containerReadListSas"]
    assert "sp=w" in kwargs["json"]["output"]["containerWriteSas"]
    assert "arrinput" not in service.containers


def test_extra_fields_reach_the_request_body(settings, service, logger):
    args = cli._parse_args(["--convert", "--poll-interval", "0"])
    session = DummySession(
        post_queue=[DummyHTTPResponse(201, {"conversionId": "conv-3"})],
        get_queue=[_token(), DummyHTTPResponse(200, {"status": "Success", "convertedAsset": CONVERTED_ASSET})],
    )

    cli.run(args, settings, logger, extra_fields={"settings": {"scaling": 2}}, session=session)

    assert session.calls[1][2]["json"]["settings"] == {"scaling": 2}


def test_conversion_failure_exits_with_error(settings, service, logger):
    args = cli._parse_args(["--convert", "--poll-interval", "0"])
    session = DummySession(
        post_queue=[DummyHTTPResponse(201, {"conversionId": "conv-4"})],
        get_queue=[_token(), DummyHTTPResponse(200, {"status": "Failure", "error": {"message": "bad fbx"}})],
    )
    assert cli.run(args, settings, logger, session=session) == 1


def test_submission_failure_skips_polling(settings, service, logger):
    args = cli._parse_args(["--convert"])
    session = DummySession(post_queue=[DummyHTTPResponse(500, {}, text="boom")], get_queue=[_token()])

    assert cli.run(args, settings, logger, session=session) == 1
    assert [c[0] for c in session.calls] == ["GET", "POST"]


def test_single_status_query_reports_pending(settings, logger):
    args = cli._parse_args(["--conversion-status", "--id", "conv-5"])
    session = DummySession(get_queue=[_token(), DummyHTTPResponse(200, {"status": "Running"})])

    assert cli.run(args, settings, logger, session=session) == 0
    assert session.calls[1][1].endswith("/conversions/conv-5")


def test_poll_timeout_is_a_failure(settings, logger):
    args = cli._parse_args(["--conversion-status", "--id", "conv-6", "--poll", "--max-polls", "2",
                            "--poll-interval", "0"])
    session = DummySession(
        get_queue=[_token(), DummyHTTPResponse(200, {"status": "Running"}), DummyHTTPResponse(200, {"status": "Running"})]
    )
    assert cli.run(args, settings, logger, session=session) == 1


def test_dry_run_lists_files_without_uploading(settings, service, logger, caplog):
    args = cli._parse_args(["--upload", "--dry-run"])

    with caplog.at_level(logging.INFO, logger="arr_conversion"):
        assert cli.run(args, settings, logger) == 0

    assert "models/textures/wood.png" in caplog.text
    assert service.containers == {}


def test_main_exits_1_on_missing_configuration(capsys):
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["--upload"])
    assert excinfo.value.code == 1
    assert "Missing required settings" in capsys.readouterr().err


def test_main_exits_1_on_bad_additional_parameters(monkeypatch):
    monkeypatch.setenv("ARR_ACCOUNT_ID", "id")
    monkeypatch.setenv("ARR_ACCOUNT_KEY", "key")
    monkeypatch.setenv("ARR_REGION", "westus2")
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["--conversion-status", "--id", "x", "--additional-parameters", "[1, 2]"])
    assert excinfo.value.code == 1


def test_main_reports_failed_conversion_with_exit_code(tmp_path, monkeypatch, asset_dir):
    config_file = tmp_path / "arrconfig.json"
    config_file.write_text(
        json.dumps(
            {
                "accountSettings": {"arrAccountId": "id", "arrAccountKey": "key", "region": "westus2"},
                "assetConversionSettings": {
                    "blobInputContainerName": "arrinput",
                    "localAssetDirectoryPath": str(asset_dir),
                    "inputAssetPath": "box.fbx",
                },
            }
        ),
        encoding="utf-8",
    )
    monkeypatch.setenv("AZURE_CONN_STR", CONN_STR)
    monkeypatch.setattr(cli, "get_service_client", lambda settings: DummyServiceClient())
    monkeypatch.setattr(cli, "get_access_token", lambda account, session=None: "tok")
    monkeypatch.setattr(
        cli, "submit_conversion", lambda *a, **kw: SubmitResult(conversion_id="conv-7")
    )
    monkeypatch.setattr(
        cli, "poll_conversion", lambda *a, **kw: PollResult(PollOutcome.FAILED, reason="bad fbx")
    )

    with pytest.raises(SystemExit) as excinfo:
        cli.main(["--config", str(config_file)])

    assert excinfo.value.code == 1
    assert (tmp_path / "logs" / "conversion_process.log").exists()


@pytest.mark.parametrize(
    "flags",
    [["--poll-interval", "-1"], ["--max-polls", "0"], ["--timeout", "0"], ["--timeout", "-5"]],
)
def test_invalid_poll_limits_are_rejected(flags):
    with pytest.raises(SystemExit) as excinfo:
        cli._parse_args(["--conversion-status", "--id", "c", "--poll", *flags])
    assert excinfo.value.code == 2


def test_invalid_poll_interval_stops_before_network(monkeypatch):
    monkeypatch.setattr(cli, "get_access_token", lambda *a, **kw: pytest.fail("token requested"))
    with pytest.raises(SystemExit):
        cli.main(["--conversion-status", "--id", "c", "--poll", "--poll-interval", "-1"])


def test_empty_asset_directory_never_reaches_submission(settings, service, logger, tmp_path):
    from dataclasses import replace

    from arr_conversion.errors import UploadError

    empty = tmp_path / "empty"
    empty.mkdir()
    args = cli._parse_args([])
    session = DummySession()
    empty_settings = replace(
        settings, conversion=replace(settings.conversion, local_asset_directory_path=str(empty))
    )

    with pytest.raises(UploadError, match="empty"):
        cli.run(args, empty_settings, logger, session=session)

    assert session.calls == []
    assert service.containers["arrinput"].uploads == []


def test_main_reports_empty_directory_with_exit_code(tmp_path, monkeypatch):
    empty = tmp_path / "empty"
    empty.mkdir()
    monkeypatch.setenv("AZURE_CONN_STR", CONN_STR)
    monkeypatch.setattr(cli, "get_service_client", lambda settings: DummyServiceClient())
    monkeypatch.setattr(cli, "get_access_token", lambda *a, **kw: pytest.fail("token requested"))

    with pytest.raises(SystemExit) as excinfo:
        cli.main(["--account-id", "id", "--account-key", "key", "--region", "westus2",
                  "--input-container", "arrinput", "--input-asset-path", "box.fbx",
                  "--local-asset-directory", str(empty)])

    assert excinfo.value.code == 1
