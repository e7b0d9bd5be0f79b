from __future__ import annotations

import logging
from unittest.mock import MagicMock, patch

from recordtrail import logging_utils


@patch("recordtrail.logging_utils.logging.basicConfig")
def test_configure_logging_stream_only(mock_basic_config: MagicMock) -> None:
    logging_utils.configure_logging(level="debug", log_file="")

    kwargs = mock_basic_config.call_args.kwargs
    assert kwargs["force"] is True
    assert kwargs["level"] == logging.DEBUG
    assert len(kwargs["handlers"]) == 1


@patch("recordtrail.logging_utils.logging.basicConfig")
def test_configure_logging_with_file(mock_basic_config: MagicMock, tmp_path) -> None:
    logging_utils.configure_logging(level="INFO", log_file=str(tmp_path / "logs" / "trail.log"))

    handlers = mock_basic_config.call_args.kwargs["handlers"]
    assert len(handlers) == 2
    assert (tmp_path / "logs").is_dir()
    handlers[1].close()


@patch("recordtrail.logging_utils.logging.basicConfig")
@patch("recordtrail.logging_utils.logging.FileHandler", side_effect=OSError("permission denied"))
@patch("recordtrail.logging_utils._logger")
def test_configure_logging_file_handler_error(mock_logger: MagicMock, _fh: MagicMock, _bc: MagicMock, tmp_path) -> None:
    logging_utils.configure_logging(level="INFO", log_file=str(tmp_path / "trail.log"))

    mock_logger.warning.assert_called_once()
