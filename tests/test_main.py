"""
Tests for the command-line entry point.
"""

import signal
import stat

import pytest
import yaml


FAKE_RECORDER = """#!/bin/sh
while [ $# -gt 0 ]; do
    case "$1" in
        -d) dir="$2"; shift ;;
        --filename) name="$2"; shift ;;
    esac
    shift
done
printf 'RIFF' > "$dir/$name.wav"
exit 0
"""


@pytest.fixture
def no_signal_handlers(monkeypatch):
    """Keep the entry point from replacing pytest's SIGINT handler."""
    monkeypatch.setattr(signal, 'signal', lambda *args: None)


@pytest.fixture
def write_config(tmp_path):
    def write(data, name='config.yaml'):
        path = tmp_path / name
        path.write_text(yaml.safe_dump(data))
        return str(path)
    return write


def _script(path, body):
    path.write_text(body)
    path.chmod(path.stat().st_mode | stat.S_IXUSR)
    return str(path)


class TestParser:
    """Test argument parsing."""

    def test_defaults(self):
        from kiwi_wspr.main import build_parser

        args = build_parser().parse_args([])

        assert args.config == 'config.yaml'
        assert args.web_port == 8080
        assert not args.web_only
        assert not args.one_shot
        assert args.server is None
        assert args.port == 8073
        assert args.freq == 14097.0
        assert args.duration == 120
        assert args.agc_gain == -1

    def test_standalone_options(self):
        from kiwi_wspr.main import build_parser

        args = build_parser().parse_args(
            ['-s', 'kiwi.local', '-p', '8074', '-f', '7040', '-d', '30', '--dir', '/tmp', '-q']
        )

        assert args.server == 'kiwi.local'
        assert args.port == 8074
        assert args.freq == 7040.0
        assert args.duration == 30
        assert args.quiet

    def test_version(self, capsys):
        from kiwi_wspr import __version__
        from kiwi_wspr.main import main

        main(['--version'])

        assert capsys.readouterr().out.strip() == f"kiwi_wspr {__version__}"


class TestDecoderMode:
    """Test daemon startup paths that exit on their own."""

    def test_missing_config_exits_1(self, tmp_path):
        from kiwi_wspr.main import main

        with pytest.raises(SystemExit) as exc_info:
            main(['--config', str(tmp_path / 'absent.yaml')])

        assert exc_info.value.code == 1

    def test_invalid_config_exits_1(self, config_dict, write_config):
        from kiwi_wspr.main import main

        config_dict['decoder'] = dict(config_dict['decoder'], decoder_path='/nonexistent/wsprd')
        path = write_config(config_dict)

        with pytest.raises(SystemExit) as exc_info:
            main(['--config', path, '--web-port', '0'])

        assert exc_info.value.code == 1

    def test_missing_cty_returns_1(self, config_dict, write_config, tmp_path):
        from kiwi_wspr.main import build_parser, run_decoder

        config_dict['decoder'] = dict(config_dict['decoder'], cty_path=str(tmp_path / 'no_cty.dat'))
        args = build_parser().parse_args(['--config', write_config(config_dict), '--web-port', '0'])

        assert run_decoder(args) == 1

    def test_one_shot_without_bands(self, config_dict, write_config, no_signal_handlers):
        from kiwi_wspr.main import build_parser, run_decoder

        config_dict['bands'] = [dict(config_dict['bands'][0], enabled=False)]
        args = build_parser().parse_args(
            ['--config', write_config(config_dict), '--web-port', '0', '--one-shot']
        )

        assert run_decoder(args) == 0


class TestStandaloneMode:
    """Test single recordings with a kiwirecorder stand-in."""

    def test_records_file(self, tmp_path, no_signal_handlers):
        from kiwi_wspr.main import build_parser, run_standalone

        recorder = _script(tmp_path / 'kiwirecorder', FAKE_RECORDER)
        out_dir = tmp_path / 'out'
        args = build_parser().parse_args(
            ['-s', 'kiwi.local', '-d', '5', '--dir', str(out_dir),
             '--filename', 'capture', '--recorder', recorder, '-q']
        )

        assert run_standalone(args) == 0
        assert (out_dir / 'capture.wav').exists()

    def test_no_file_returns_1(self, tmp_path, no_signal_handlers):
        from kiwi_wspr.main import build_parser, run_standalone

        recorder = _script(tmp_path / 'kiwirecorder', "#!/bin/sh\nexit 1\n")
        args = build_parser().parse_args(
            ['-s', 'kiwi.local', '-d', '5', '--dir', str(tmp_path / 'out'),
             '--recorder', recorder, '-q']
        )

        assert run_standalone(args) == 1

    def test_recorder_not_launchable(self, tmp_path, no_signal_handlers):
        from kiwi_wspr.main import build_parser, run_standalone

        args = build_parser().parse_args(
            ['-s', 'kiwi.local', '--dir', str(tmp_path), '--recorder', str(tmp_path / 'missing')]
        )

        assert run_standalone(args) == 1
