"""
Tests for the marktrack command line.
"""

import argparse
import csv

import cv2
import numpy as np
import pytest

from marktrack.cli import CSV_HEADER, build_parser, main, parse_seed
from marktrack.config import save_calibration
from marktrack.parameters import ParameterKey, Parameters
from marktrack.types import MarkType


def write_video(path, count=3, value=90):
    writer = cv2.VideoWriter(str(path), cv2.VideoWriter_fourcc(*"MJPG"), 10, (64, 48))
    for _ in range(count):
        writer.write(np.full((48, 64, 3), value, dtype=np.uint8))
    writer.release()
    return path


class TestParseSeed:
    def test_default_radius(self):
        camera, mark = parse_seed("1:100:80", Parameters({ParameterKey.TEMPLATE_RADIUS: 12}))
        assert camera == 1
        assert mark.type is MarkType.CIRCLE
        assert mark.center == (100.0, 80.0)
        assert mark.radius == 12

    def test_circle(self):
        _, mark = parse_seed("0:10.5:20:7", Parameters())
        assert mark.center == (10.5, 20.0)
        assert mark.radius == 7

    def test_rectangle(self):
        _, mark = parse_seed("2:10:20:30:40", Parameters())
        assert mark.type is MarkType.RECTANGLE
        assert mark.size == (30.0, 40.0)

    @pytest.mark.parametrize("text", ["1:2", "a:b:c", "1:2:3:4:5:6"])
    def test_invalid(self, text):
        with pytest.raises(argparse.ArgumentTypeError):
            parse_seed(text, Parameters())


class TestParser:
    def test_track_arguments(self):
        args = build_parser().parse_args([
            "track", "a.avi", "b.avi", "--calibration", "cal.toml", "--seed", "0:1:2", "--seed", "1:3:4",
        ])
        assert [str(video) for video in args.videos] == ["a.avi", "b.avi"]
        assert args.seed == ["0:1:2", "1:3:4"]
        assert args.output is None

    def test_calibrate_default_output(self):
        args = build_parser().parse_args(["calibrate", "a.avi"])
        assert str(args.output) == "calibration.toml"


class TestMain:
    def test_no_command(self, capsys):
        assert main([]) == 0
        assert "usage" in capsys.readouterr().out

    def test_track_without_calibration(self, temp_dir):
        video = write_video(temp_dir / "a.avi")
        assert main(["track", str(video), "--calibration", str(temp_dir / "missing.toml")]) == 1

    def test_track_invalid_seed(self, temp_dir, stereo_calibration):
        save_calibration(stereo_calibration, temp_dir / "calibration.toml")
        assert main([
            "track", "a.avi", "b.avi",
            "--calibration", str(temp_dir / "calibration.toml"),
            "--seed", "nonsense",
        ]) == 1

    def test_track_arity_mismatch(self, temp_dir, stereo_calibration):
        save_calibration(stereo_calibration, temp_dir / "calibration.toml")
        video = write_video(temp_dir / "a.avi")
        assert main(["track", str(video), "--calibration", str(temp_dir / "calibration.toml")]) == 1

    def test_track_writes_csv(self, temp_dir, stereo_calibration):
        save_calibration(stereo_calibration, temp_dir / "calibration.toml")
        videos = [write_video(temp_dir / "a.avi"), write_video(temp_dir / "b.avi")]
        output = temp_dir / "positions.csv"

        status = main([
            "track", *map(str, videos),
            "--calibration", str(temp_dir / "calibration.toml"),
            "-o", str(output),
        ])

        assert status == 0
        with open(output, newline="") as f:
            rows = list(csv.reader(f))
        assert rows[0] == CSV_HEADER

    def test_calibrate_without_pattern(self, temp_dir):
        video = write_video(temp_dir / "a.avi")
        output = temp_dir / "calibration.toml"

        assert main(["calibrate", str(video), "-o", str(output)]) == 1
        assert not output.exists()
