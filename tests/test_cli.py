"""Unit tests for autodeploy/__main__.py and autodeploy/config.py"""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from unittest.mock import patch

import pytest

from autodeploy.__main__ import build_supervisor, configure_logging, parse_args
from autodeploy.config import Config
from autodeploy.detector import ChangeDetector
from autodeploy.process import ProcessGroupController
from autodeploy.runner import DeployRunner


@pytest.fixture
def cfg():
    return Config(token="", deploy_command="", poll_interval=5, retry_delay=10)


class TestParseArgs:

    def test_token_and_deploy(self, cfg):
        args = parse_args(["--token", "t0k", "--deploy", "make run"], cfg)
        assert args.token == "t0k"
        assert args.deploy == "make run"
        assert args.interval == 5
        assert args.retry_delay == 10

    @pytest.mark.parametrize(
        "argv",
        [[], ["--token", "t0k"], ["--deploy", "make run"], ["--token", "", "--deploy", "x"]],
    )
    def test_missing_required_flag_is_fatal(self, cfg, argv, capsys):
        with pytest.raises(SystemExit) as excinfo:
            parse_args(argv, cfg)
        assert excinfo.value.code != 0
        assert "--token and --deploy are required" in capsys.readouterr().err

    def test_flags_fall_back_to_config(self):
        cfg = Config(token="from-env", deploy_command="./run.sh")
        args = parse_args([], cfg)
        assert (args.token, args.deploy) == ("from-env", "./run.sh")

    def test_flags_override_config(self):
        cfg = Config(token="from-env", deploy_command="./run.sh")
        args = parse_args(["-t", "cli", "-d", "./other.sh", "--interval", "1"], cfg)
        assert (args.token, args.deploy, args.interval) == ("cli", "./other.sh", 1.0)


class TestConfig:

    def test_request_timeout_is_capped(self):
        assert Config(request_timeout=60).request_timeout == 15.0

    def test_api_url_trailing_slash(self):
        assert Config(api_url="https://ghe.example.com/api/v3/").api_url == (
            "https://ghe.example.com/api/v3"
        )


class TestWiring:

    def test_build_supervisor(self, cfg, tmp_path):
        args = parse_args(
            ["--token", "t0k", "--deploy", "./serve", "--repo-dir", str(tmp_path), "--interval", "2"],
            cfg,
        )
        supervisor = build_supervisor(args)

        assert isinstance(supervisor.detector, ChangeDetector)
        assert isinstance(supervisor.controller, ProcessGroupController)
        assert isinstance(supervisor.runner, DeployRunner)
        assert supervisor.poll_interval == 2
        assert supervisor.runner.command == "./serve"
        assert supervisor.detector.token == "t0k"
        assert supervisor.controller.cwd == tmp_path
        assert supervisor.detector._state is supervisor.state

    def test_configure_logging_with_file(self, tmp_path):
        log_file = tmp_path / "logs" / "autodeploy.log"
        with patch("autodeploy.__main__.logging.basicConfig") as basic_config:
            configure_logging(log_file, verbose=True)

        kwargs = basic_config.call_args.kwargs
        assert kwargs["level"] == logging.DEBUG
        file_handlers = [h for h in kwargs["handlers"] if isinstance(h, RotatingFileHandler)]
        assert len(file_handlers) == 1
        assert Path(file_handlers[0].baseFilename) == log_file
        assert log_file.parent.is_dir()
        for handler in kwargs["handlers"]:
            handler.close()

    def test_configure_logging_console_only(self):
        with patch("autodeploy.__main__.logging.basicConfig") as basic_config:
            configure_logging()

        kwargs = basic_config.call_args.kwargs
        assert kwargs["level"] == logging.INFO
        assert len(kwargs["handlers"]) == 1
