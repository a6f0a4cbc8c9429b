"""Tests for the per-backend probe output parsers."""

import json

import pytest

from engine.errors import BackendExecutionError
from worker.parsers import parse_ffprobe_json, parse_native_info

NATIVE_OUTPUT = """Formato: mov,mp4,m4a,3gp,3g2,mj2
Duración: 100.5 segundos
Resolución: 1920x1080
Codec de video: h264 (4800 kbps)
Codec de audio: aac (192 kbps)
Canales de audio: 2
Frecuencia de muestreo: 48000 Hz
Metadatos:
  title: Movie
  artist: Someone
"""


def ffprobe_document(**overrides) -> str:
    doc = {
        "format": {
            "format_name": "matroska,webm",
            "duration": "61.250000",
            "tags": {"title": "Clip", "encoder": "Lavf60"},
        },
        "streams": [
            {"codec_type": "video", "codec_name": "vp9", "width": 1280, "height": 720, "bit_rate": "2400000"},
            {
                "codec_type": "audio",
                "codec_name": "opus",
                "bit_rate": "128000",
                "channels": 2,
                "sample_rate": "48000",
            },
        ],
    }
    doc.update(overrides)
    return json.dumps(doc)


class TestParseNativeInfo:
    """Tests for the streamvio-core labelled text format."""

    def test_full_output(self):
        info = parse_native_info(NATIVE_OUTPUT, "/media/movie.mp4")

        assert info.path == "/media/movie.mp4"
        assert info.format == "mov"
        assert info.duration_ms == 100500
        assert info.duration_seconds == pytest.approx(100.5)
        assert (info.width, info.height) == (1920, 1080)
        assert info.video_codec == "h264"
        assert info.video_bitrate == 4800
        assert info.audio_codec == "aac"
        assert info.audio_bitrate == 192
        assert info.audio_channels == 2
        assert info.audio_sample_rate == 48000
        assert info.metadata == {"title": "Movie", "artist": "Someone"}

    def test_labels_without_accents(self):
        output = "Formato: mp4\nDuracion: 12\nResolucion: 640x360\nCodec de video: h264\n"
        info = parse_native_info(output, "x.mp4")
        assert info.duration_ms == 12000
        assert info.height == 360
        assert info.video_bitrate == 0

    def test_audio_only_source(self):
        output = "Formato: mp3\nDuración: 180 segundos\nCodec de audio: mp3 (320 kbps)\n"
        info = parse_native_info(output, "song.mp3")
        assert info.has_video is False
        assert info.has_audio is True
        assert info.audio_bitrate == 320

    def test_unknown_labels_ignored(self):
        output = "Formato: mp4\nDuración: 5\nContenedor: isom\nsin etiqueta\n"
        assert parse_native_info(output, "x.mp4").duration_ms == 5000

    def test_missing_duration_raises(self):
        with pytest.raises(BackendExecutionError):
            parse_native_info("Formato: mp4\n", "x.mp4")

    def test_empty_output_raises(self):
        with pytest.raises(BackendExecutionError):
            parse_native_info("", "x.mp4")

    def test_unparseable_duration_is_zero(self):
        info = parse_native_info("Formato: mp4\nDuración: desconocida\n", "x.mp4")
        assert info.duration_ms == 0


class TestParseFfprobeJson:
    """Tests for ffprobe JSON normalization."""

    def test_full_document(self):
        info = parse_ffprobe_json(ffprobe_document(), "/media/clip.webm")

        assert info.format == "matroska"
        assert info.duration_ms == 61250
        assert (info.width, info.height) == (1280, 720)
        assert info.video_codec == "vp9"
        assert info.video_bitrate == 2400
        assert info.audio_codec == "opus"
        assert info.audio_bitrate == 128
        assert info.audio_channels == 2
        assert info.audio_sample_rate == 48000
        assert info.metadata["title"] == "Clip"

    def test_duration_falls_back_to_streams(self):
        """Fragmented files being written report duration only per stream."""
        doc = ffprobe_document(
            format={"format_name": "mov,mp4"},
            streams=[
                {"codec_type": "video", "codec_name": "h264", "width": 640, "height": 360, "duration": "3.2"},
                {"codec_type": "audio", "codec_name": "aac", "duration": "3.5"},
            ],
        )
        info = parse_ffprobe_json(doc, "partial.mp4")
        assert info.duration_ms == 3500

    def test_no_streams(self):
        info = parse_ffprobe_json(json.dumps({"format": {"format_name": "mp4"}}), "x.mp4")
        assert info.duration_ms == 0
        assert info.has_video is False
        assert info.has_audio is False

    def test_invalid_json_raises(self):
        with pytest.raises(BackendExecutionError):
            parse_ffprobe_json("not json", "x.mp4")

    def test_non_object_raises(self):
        with pytest.raises(BackendExecutionError):
            parse_ffprobe_json("[1, 2]", "x.mp4")

    def test_same_shape_as_native(self):
        native = parse_native_info(
            "Formato: mp4\nDuración: 10\nResolución: 1280x720\nCodec de video: h264 (2400 kbps)\n"
            "Codec de audio: aac (128 kbps)\nCanales de audio: 2\nFrecuencia de muestreo: 44100 Hz\n",
            "x.mp4",
        )
        ffprobe = parse_ffprobe_json(
            json.dumps(
                {
                    "format": {"format_name": "mp4", "duration": "10.0"},
                    "streams": [
                        {"codec_type": "video", "codec_name": "h264", "width": 1280, "height": 720, "bit_rate": "2400000"},
                        {
                            "codec_type": "audio",
                            "codec_name": "aac",
                            "bit_rate": "128000",
                            "channels": 2,
                            "sample_rate": "44100",
                        },
                    ],
                }
            ),
            "x.mp4",
        )
        assert native == ffprobe
