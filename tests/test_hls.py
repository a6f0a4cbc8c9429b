"""
Tests for HLS ladder planning, command building and playlist verification.
"""

from pathlib import Path

import pytest

from engine.errors import OutputVerificationError
from worker.hls import (
    DEFAULT_LADDER,
    MASTER_PLAYLIST_NAME,
    Rung,
    build_hls_command,
    count_rung_segments,
    filter_ladder,
    is_ladder_complete,
    plan_ladder,
    validate_hls_playlist,
    verify_ladder,
)


def write_rung(ladder, variant, segments=2, endlist=True):
    basename = ladder.output_dir.name[: -len("_hls")]
    lines = ["#EXTM3U", "#EXT-X-VERSION:3", "#EXT-X-TARGETDURATION:6"]
    for i in range(segments):
        name = f"{basename}_{variant.name}_{i:03d}.ts"
        (ladder.output_dir / name).write_bytes(b"\x47" * 188)
        lines.extend(["#EXTINF:6.0,", name])
    if endlist:
        lines.append("#EXT-X-ENDLIST")
    variant.playlist_path.write_text("\n".join(lines) + "\n")


def write_master(ladder):
    lines = ["#EXTM3U"]
    for variant in ladder.variants:
        lines.append(f"#EXT-X-STREAM-INF:BANDWIDTH={variant.bitrate * 1000}")
        lines.append(variant.playlist_path.name)
    ladder.master_playlist_path.write_text("\n".join(lines) + "\n")


@pytest.fixture
def ladder(tmp_path):
    planned = plan_ladder(Path("/media/movie.mp4"), tmp_path, max_height=360)
    planned.output_dir.mkdir(parents=True)
    return planned


class TestFilterLadder:
    """Tests for rung selection."""

    def test_no_limit_returns_all(self):
        assert [r.height for r in filter_ladder()] == [240, 360, 480, 720, 1080]

    def test_limit(self):
        assert [r.height for r in filter_ladder(500)] == [240, 360, 480]

    def test_exact_match_included(self):
        assert [r.height for r in filter_ladder(720)][-1] == 720

    def test_too_small_keeps_lowest(self):
        assert [r.height for r in filter_ladder(100)] == [240]

    def test_sorted_lowest_first(self):
        ladder = [Rung("b", 720, 2800), Rung("a", 240, 400)]
        assert [r.name for r in filter_ladder(None, ladder)] == ["a", "b"]

    def test_empty_ladder(self):
        with pytest.raises(ValueError):
            filter_ladder(720, [])

    def test_default_ladder_bitrates(self):
        assert {r.name: r.bitrate for r in DEFAULT_LADDER}["720p"] == 2800


class TestPlanLadder:
    def test_paths(self, tmp_path):
        planned = plan_ladder(Path("/media/movie.mp4"), tmp_path, max_height=480, job_id=7)

        assert planned.job_id == 7
        assert planned.output_dir == tmp_path / "movie_hls"
        assert planned.master_playlist_path == tmp_path / "movie_hls" / MASTER_PLAYLIST_NAME
        assert planned.heights == (240, 360, 480)
        assert planned.variants[0].playlist_path.name == "movie_240p.m3u8"


class TestBuildHlsCommand:
    """Tests for the single-pass multi-rung ffmpeg command."""

    def test_maps_every_rung(self, ladder):
        cmd = build_hls_command("ffmpeg", Path("/media/movie.mp4"), ladder)
        assert cmd.count("-map") == 4
        assert cmd[cmd.index("-var_stream_map") + 1] == "v:0,a:0,name:240p v:1,a:1,name:360p"

    def test_rung_settings(self, ladder):
        cmd = build_hls_command("ffmpeg", Path("/media/movie.mp4"), ladder, video_encoder="libx265")
        assert cmd[cmd.index("-filter:v:1") + 1] == "scale=-2:360"
        assert cmd[cmd.index("-b:v:1") + 1] == "800k"
        assert cmd[cmd.index("-bufsize:v:0") + 1] == "800k"
        assert cmd[cmd.index("-c:v:0") + 1] == "libx265"

    def test_segment_layout(self, ladder):
        cmd = build_hls_command("ffmpeg", Path("/media/movie.mp4"), ladder, segment_duration=4)
        assert cmd[cmd.index("-hls_time") + 1] == "4"
        assert cmd[cmd.index("-force_key_frames") + 1] == "expr:gte(t,n_forced*4)"
        assert cmd[cmd.index("-hls_segment_filename") + 1] == str(ladder.output_dir / "movie_%v_%03d.ts")
        assert cmd[cmd.index("-master_pl_name") + 1] == MASTER_PLAYLIST_NAME
        assert cmd[-1] == str(ladder.output_dir / "movie_%v.m3u8")

    def test_without_audio(self, ladder):
        cmd = build_hls_command("ffmpeg", Path("/media/movie.mp4"), ladder, has_audio=False)
        assert "0:a:0" not in cmd
        assert "-c:a" not in cmd

    def test_input_args_before_input(self, ladder):
        cmd = build_hls_command("ffmpeg", Path("in.mp4"), ladder, input_args=["-hwaccel", "auto"])
        assert cmd.index("-hwaccel") < cmd.index("-i")


class TestCountRungSegments:
    def test_empty_dir(self, ladder):
        assert count_rung_segments(ladder) == 0

    def test_minimum_across_rungs(self, ladder):
        for i in range(5):
            (ladder.output_dir / f"movie_240p_{i:03d}.ts").write_bytes(b"x")
        for i in range(3):
            (ladder.output_dir / f"movie_360p_{i:03d}.ts").write_bytes(b"x")
        (ladder.output_dir / "movie_240p.m3u8").write_text("#EXTM3U\n")

        assert count_rung_segments(ladder) == 3


class TestValidateHlsPlaylist:
    """Tests for rung playlist validation."""

    def test_missing(self, tmp_path):
        valid, error = validate_hls_playlist(tmp_path / "nope.m3u8")
        assert not valid
        assert "does not exist" in error

    def test_complete(self, ladder):
        write_rung(ladder, ladder.variants[0])
        assert validate_hls_playlist(ladder.variants[0].playlist_path) == (True, None)

    def test_missing_header(self, tmp_path):
        playlist = tmp_path / "p.m3u8"
        playlist.write_text("#EXT-X-ENDLIST\n")
        assert validate_hls_playlist(playlist) == (False, "Missing #EXTM3U header")

    def test_incomplete(self, ladder):
        write_rung(ladder, ladder.variants[0], endlist=False)
        valid, error = validate_hls_playlist(ladder.variants[0].playlist_path)
        assert not valid
        assert "incomplete" in error

    def test_missing_segment(self, ladder):
        write_rung(ladder, ladder.variants[0])
        (ladder.output_dir / "movie_240p_001.ts").unlink()
        valid, error = validate_hls_playlist(ladder.variants[0].playlist_path)
        assert not valid
        assert "movie_240p_001.ts" in error

    def test_empty_segment(self, ladder):
        write_rung(ladder, ladder.variants[0])
        (ladder.output_dir / "movie_240p_000.ts").write_bytes(b"")
        valid, error = validate_hls_playlist(ladder.variants[0].playlist_path)
        assert not valid
        assert "Empty segment" in error

    def test_no_segments(self, tmp_path):
        playlist = tmp_path / "p.m3u8"
        playlist.write_text("#EXTM3U\n#EXT-X-ENDLIST\n")
        assert not validate_hls_playlist(playlist)[0]
        assert validate_hls_playlist(playlist, check_segments=False) == (True, None)


class TestVerifyLadder:
    def test_complete_ladder(self, ladder):
        for variant in ladder.variants:
            write_rung(ladder, variant)
        write_master(ladder)
        verify_ladder(ladder)

    def test_missing_master(self, ladder):
        for variant in ladder.variants:
            write_rung(ladder, variant)
        with pytest.raises(OutputVerificationError, match="Master playlist missing"):
            verify_ladder(ladder)

    def test_master_missing_rung(self, ladder):
        for variant in ladder.variants:
            write_rung(ladder, variant)
        ladder.master_playlist_path.write_text("#EXTM3U\nmovie_240p.m3u8\n")
        with pytest.raises(OutputVerificationError, match="movie_360p.m3u8"):
            verify_ladder(ladder)

    def test_truncated_rung(self, ladder):
        write_rung(ladder, ladder.variants[0])
        write_rung(ladder, ladder.variants[1], endlist=False)
        write_master(ladder)
        with pytest.raises(OutputVerificationError, match="360p"):
            verify_ladder(ladder)


class TestIsLadderComplete:
    """A ladder only counts as reusable output once every rung is finished."""

    def test_complete(self, ladder):
        for variant in ladder.variants:
            write_rung(ladder, variant)
        write_master(ladder)
        assert is_ladder_complete(ladder.master_playlist_path)

    def test_master_written_before_rungs_finish(self, ladder):
        write_rung(ladder, ladder.variants[0])
        write_rung(ladder, ladder.variants[1], endlist=False)
        write_master(ladder)
        assert not is_ladder_complete(ladder.master_playlist_path)

    def test_rung_playlist_not_written_yet(self, ladder):
        write_rung(ladder, ladder.variants[0])
        write_master(ladder)
        assert not is_ladder_complete(ladder.master_playlist_path)

    def test_master_without_rungs(self, ladder):
        ladder.master_playlist_path.write_text("#EXTM3U\n")
        assert not is_ladder_complete(ladder.master_playlist_path)

    def test_missing_master(self, ladder):
        assert not is_ladder_complete(ladder.master_playlist_path)
