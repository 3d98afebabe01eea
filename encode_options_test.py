"""Tests for encode option resolution and ffmpeg command building."""

from unittest.mock import patch

import pytest

import encode_options
from encode_options import (
    DEFAULT_VAAPI_DEVICE,
    EncodeOptions,
    build_engine_args,
    build_hls_cmd,
    build_remux_cmd,
    get_quality_settings,
    get_user_agent,
    get_vaapi_device,
    parse_bool,
    resolve_encode_options,
)


def _arg_after(cmd: list[str], flag: str) -> str:
    return cmd[cmd.index(flag) + 1]


# =============================================================================
# Option Resolution Tests
# =============================================================================


class TestResolveEncodeOptions:
    def test_defaults(self):
        assert resolve_encode_options() == EncodeOptions("cpu", True, "fast", "balanced")

    def test_canonicalizes_case_and_whitespace(self):
        opts = resolve_encode_options(" NVENC ", "false", "Medium", "QUALITY")
        assert opts == EncodeOptions("nvenc", False, "medium", "quality")

    @pytest.mark.parametrize(
        "hw_accel,preset,quality",
        [
            ("quantum", None, None),
            (None, "ludicrous", None),
            (None, None, "cinematic"),
            (42, 3.5, ["x"]),
        ],
    )
    def test_unknown_values_fall_back(self, hw_accel, preset, quality):
        opts = resolve_encode_options(hw_accel, None, preset, quality)
        assert opts.hw_accel == "cpu"
        assert opts.preset == "fast"
        assert opts.quality == "balanced"

    def test_equal_requests_give_equal_options(self):
        a = resolve_encode_options("cpu", "true", "fast", "balanced")
        b = resolve_encode_options("CPU", "1", "FAST", None)
        assert a == b
        assert hash(a) == hash(b)

    @pytest.mark.parametrize(
        "value,expected",
        [
            (None, True),
            ("", True),
            ("true", True),
            ("1", True),
            ("false", False),
            ("FALSE", False),
            ("0", False),
            ("no", False),
            ("off", False),
            (False, False),
        ],
    )
    def test_parse_bool(self, value, expected: bool):
        assert parse_bool(value) is expected


class TestQualitySettings:
    @pytest.mark.parametrize(
        "quality,crf,bitrate,maxrate",
        [
            ("performance", 28, "2M", "3M"),
            ("balanced", 23, "4M", "6M"),
            ("quality", 18, "8M", "12M"),
        ],
    )
    def test_tiers(self, quality: str, crf: int, bitrate: str, maxrate: str):
        q = get_quality_settings(quality)
        assert (q.crf, q.bitrate, q.maxrate) == (crf, bitrate, maxrate)

    def test_unknown_tier_is_balanced(self):
        assert get_quality_settings("nope") == get_quality_settings("balanced")


# =============================================================================
# Engine Args Tests
# =============================================================================


class TestBuildEngineArgs:
    def test_cpu(self):
        decode, encode = build_engine_args(EncodeOptions("cpu", True, "veryfast", "quality"))
        assert decode == []
        assert encode == [
            "-c:v",
            "libx264",
            "-preset",
            "veryfast",
            "-tune",
            "zerolatency",
            "-crf",
            "18",
            "-maxrate",
            "12M",
            "-bufsize",
            "12M",
        ]

    @pytest.mark.parametrize(
        "preset,expected",
        [("ultrafast", "p1"), ("fast", "p5"), ("medium", "p5"), ("veryslow", "p7")],
    )
    def test_nvenc_preset_mapping(self, preset: str, expected: str):
        _, encode = build_engine_args(EncodeOptions("nvenc", True, preset, "balanced"))
        assert _arg_after(encode, "-preset") == expected

    def test_nvenc_uses_offset_cq(self):
        decode, encode = build_engine_args(EncodeOptions("nvenc", True, "fast", "balanced"))
        assert decode == ["-hwaccel", "cuda", "-hwaccel_output_format", "cuda"]
        assert _arg_after(encode, "-c:v") == "h264_nvenc"
        assert _arg_after(encode, "-cq") == "28"
        assert _arg_after(encode, "-b:v") == "4M"

    def test_hw_decode_disabled_drops_decode_args(self):
        for hw in ("nvenc", "qsv", "vaapi", "amf", "videotoolbox"):
            decode, _ = build_engine_args(EncodeOptions(hw, False, "fast", "balanced"))
            assert decode == [], hw

    def test_qsv(self):
        decode, encode = build_engine_args(
            EncodeOptions("qsv", True, "ultrafast", "performance"), "/dev/dri/renderD129"
        )
        assert _arg_after(decode, "-qsv_device") == "/dev/dri/renderD129"
        assert _arg_after(encode, "-preset") == "veryfast"
        assert _arg_after(encode, "-global_quality") == "33"

    def test_vaapi_filters_depend_on_hw_decode(self):
        _, hw = build_engine_args(EncodeOptions("vaapi", True, "fast", "balanced"))
        _, sw = build_engine_args(EncodeOptions("vaapi", False, "fast", "balanced"))
        assert _arg_after(hw, "-vf") == "format=nv12|vaapi,hwupload"
        assert _arg_after(sw, "-vf") == "format=nv12,hwupload"
        assert _arg_after(hw, "-qp") == "28"

    @pytest.mark.parametrize(
        "quality,expected",
        [("performance", "speed"), ("balanced", "balanced"), ("quality", "quality")],
    )
    def test_amf_quality(self, quality: str, expected: str):
        decode, encode = build_engine_args(EncodeOptions("amf", True, "fast", quality))
        assert decode == ["-hwaccel", "d3d11va"]
        assert _arg_after(encode, "-quality") == expected

    def test_videotoolbox_quality_scale(self):
        _, encode = build_engine_args(EncodeOptions("videotoolbox", True, "fast", "balanced"))
        assert _arg_after(encode, "-q:v") == "31"
        assert encode[-2:] == ["-realtime", "1"]


# =============================================================================
# Command Tests
# =============================================================================


class TestBuildHlsCmd:
    def test_command_structure(self):
        cmd = build_hls_cmd("http://x/live.ts", EncodeOptions(), "/tmp/hls/stream_1")
        assert cmd[:4] == ["ffmpeg", "-hide_banner", "-loglevel", "warning"]
        assert _arg_after(cmd, "-i") == "http://x/live.ts"
        assert cmd.index("-reconnect") < cmd.index("-i")
        assert _arg_after(cmd, "-f") == "hls"
        assert _arg_after(cmd, "-hls_time") == "4"
        assert _arg_after(cmd, "-hls_list_size") == "6"
        assert _arg_after(cmd, "-hls_flags") == "delete_segments+append_list+temp_file"
        assert _arg_after(cmd, "-hls_segment_filename") == "/tmp/hls/stream_1/segment%03d.ts"
        assert cmd[-1] == "/tmp/hls/stream_1/playlist.m3u8"
        assert _arg_after(cmd, "-c:a") == "aac"

    def test_decode_args_before_input(self):
        cmd = build_hls_cmd("http://x/live.ts", EncodeOptions("nvenc"), "/out")
        assert cmd.index("-hwaccel") < cmd.index("-i")
        assert cmd.index("h264_nvenc") > cmd.index("-i")

    def test_user_agent(self):
        cmd = build_hls_cmd("http://x", EncodeOptions(), "/out", user_agent="VLC/3.0")
        assert _arg_after(cmd, "-user_agent") == "VLC/3.0"
        assert "-user_agent" not in build_hls_cmd("http://x", EncodeOptions(), "/out")

    def test_equal_options_give_identical_commands(self):
        a = build_hls_cmd("http://x", resolve_encode_options("CPU"), "/out")
        b = build_hls_cmd("http://x", resolve_encode_options("cpu"), "/out")
        assert a == b

    def test_remux_cmd(self):
        cmd = build_remux_cmd("/rec/abc.ts", "/rec/News.mp4")
        assert _arg_after(cmd, "-i") == "/rec/abc.ts"
        assert _arg_after(cmd, "-c:v") == "copy"
        assert _arg_after(cmd, "-c:a") == "copy"
        assert _arg_after(cmd, "-movflags") == "+faststart"
        assert cmd[-1] == "/rec/News.mp4"


class TestSettingsHooks:
    def teardown_method(self):
        encode_options.init(dict)

    def test_default_user_agent(self):
        encode_options.init(dict)
        assert get_user_agent() is None

    @pytest.mark.parametrize("preset", ["vlc", "chrome", "tivimate"])
    def test_preset_user_agent(self, preset: str):
        encode_options.init(lambda: {"user_agent_preset": preset})
        assert get_user_agent() == encode_options._USER_AGENT_PRESETS[preset]

    def test_custom_user_agent(self):
        encode_options.init(
            lambda: {"user_agent_preset": "custom", "user_agent_custom": "MyPlayer/1.0"}
        )
        assert get_user_agent() == "MyPlayer/1.0"

    def test_vaapi_device(self):
        encode_options.init(dict)
        assert get_vaapi_device() == DEFAULT_VAAPI_DEVICE
        with patch.object(encode_options, "_load_settings", lambda: {"vaapi_device": "/dev/x"}):
            assert get_vaapi_device() == "/dev/x"


if __name__ == "__main__":
    from testing import run_tests

    run_tests(__file__)
