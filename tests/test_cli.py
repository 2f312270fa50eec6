from click.testing import CliRunner

from mpcecdsa.cli import main

ENV = {"MPCECDSA_PAILLIER_BITS": "1024", "MPCECDSA_LOG_LEVEL": "WARNING"}


def test_demo():
    result = CliRunner().invoke(main, ["demo", "--t", "2", "--n", "3", "--message", "hello"], env=ENV)
    print(result.output)
    assert result.exit_code == 0
    assert "verifies   : True" in result.output
    assert "signers    : party-1, party-2" in result.output


def test_demo_over_qr_frames():
    result = CliRunner().invoke(main, ["demo", "--t", "2", "--n", "2", "--qr", "--chain", "polygon"], env=ENV)
    assert result.exit_code == 0
    assert "(polygon)" in result.output
    assert "verifies   : True" in result.output


def test_demo_rejects_bad_threshold():
    result = CliRunner().invoke(main, ["demo", "--t", "4", "--n", "3"], env=ENV)
    assert result.exit_code == 1
    assert "InvalidParameters" in result.output
