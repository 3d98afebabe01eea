"""Encode option resolution and ffmpeg command building."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal

import logging


log = logging.getLogger(__name__)

HwAccel = Literal["cpu", "nvenc", "qsv", "vaapi", "amf", "videotoolbox"]
Quality = Literal["performance", "balanced", "quality"]

DEFAULT_HW_ACCEL: HwAccel = "cpu"
DEFAULT_QUALITY: Quality = "balanced"
DEFAULT_PRESET = "fast"
DEFAULT_VAAPI_DEVICE = "/dev/dri/renderD128"

# HLS output layout
MANIFEST_NAME = "playlist.m3u8"
SEG_PREFIX = "segment"  # Segment files are named segment000.ts, segment001.ts, etc.
SEG_SUFFIX = ".ts"
_HLS_SEGMENT_DURATION_SEC = 4
_HLS_LIST_SIZE = 6

_HW_ACCELS: tuple[str, ...] = ("cpu", "nvenc", "qsv", "vaapi", "amf", "videotoolbox")

_PRESETS: tuple[str, ...] = (
    "ultrafast",
    "superfast",
    "veryfast",
    "faster",
    "fast",
    "medium",
    "slow",
    "slower",
    "veryslow",
)

# NVENC uses numbered presets p1 (fastest) .. p7 (slowest)
_NVENC_PRESETS: dict[str, str] = {
    "ultrafast": "p1",
    "superfast": "p2",
    "veryfast": "p3",
    "faster": "p4",
    "fast": "p5",
    "medium": "p5",
    "slow": "p6",
    "slower": "p7",
    "veryslow": "p7",
}

# Offset added to CRF for encoders with a CQ/QP scale (hardware encoders)
_HW_QUALITY_OFFSET = 5

_USER_AGENT_PRESETS = {
    "vlc": "VLC/3.0.20 LibVLC/3.0.20",
    "chrome": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "tivimate": "TiviMate/4.7.0",
}

_load_settings: Callable[[], dict[str, Any]] = dict


@dataclass(frozen=True, slots=True)
class QualitySettings:
    crf: int
    bitrate: str
    maxrate: str


_QUALITY_SETTINGS: dict[str, QualitySettings] = {
    "performance": QualitySettings(crf=28, bitrate="2M", maxrate="3M"),
    "balanced": QualitySettings(crf=23, bitrate="4M", maxrate="6M"),
    "quality": QualitySettings(crf=18, bitrate="8M", maxrate="12M"),
}


@dataclass(frozen=True, slots=True)
class EncodeOptions:
    """Canonical encode options. Equal options produce identical commands."""

    hw_accel: HwAccel = DEFAULT_HW_ACCEL
    hw_decode: bool = True
    preset: str = DEFAULT_PRESET
    quality: Quality = DEFAULT_QUALITY


def init(load_settings: Callable[[], dict[str, Any]]) -> None:
    """Initialize module with settings loader."""
    global _load_settings
    _load_settings = load_settings


def get_user_agent() -> str | None:
    """Get user-agent string from settings, or None to use FFmpeg default."""
    settings = _load_settings()
    preset = settings.get("user_agent_preset", "default")
    if preset == "default":
        return None
    if preset == "custom":
        return settings.get("user_agent_custom") or None
    return _USER_AGENT_PRESETS.get(preset)


def get_vaapi_device() -> str:
    """Get the DRM render node used for VAAPI/QSV."""
    return _load_settings().get("vaapi_device") or DEFAULT_VAAPI_DEVICE


# ===========================================================================
# Option Resolution
# ===========================================================================


def _canonical(value: Any) -> str:
    return str(value).strip().lower() if value is not None else ""


def parse_bool(value: Any, default: bool = True) -> bool:
    """Parse a query-string style boolean ('false', '0', 'no', 'off' are false)."""
    if isinstance(value, bool):
        return value
    text = _canonical(value)
    if not text:
        return default
    return text not in ("false", "0", "no", "off")


def resolve_encode_options(
    hw_accel: Any = None,
    hw_decode: Any = True,
    preset: Any = None,
    quality: Any = None,
) -> EncodeOptions:
    """Canonicalize requested options. Unknown values fall back to defaults, never raise."""
    accel = _canonical(hw_accel)
    if accel not in _HW_ACCELS:
        if accel:
            log.info("Unknown hwaccel %r, using %s", hw_accel, DEFAULT_HW_ACCEL)
        accel = DEFAULT_HW_ACCEL
    tier = _canonical(quality)
    if tier not in _QUALITY_SETTINGS:
        if tier:
            log.info("Unknown quality %r, using %s", quality, DEFAULT_QUALITY)
        tier = DEFAULT_QUALITY
    preset_name = _canonical(preset)
    if preset_name not in _PRESETS:
        if preset_name:
            log.info("Unknown preset %r, using %s", preset, DEFAULT_PRESET)
        preset_name = DEFAULT_PRESET
    return EncodeOptions(
        hw_accel=accel,  # type: ignore[arg-type]
        hw_decode=parse_bool(hw_decode),
        preset=preset_name,
        quality=tier,  # type: ignore[arg-type]
    )


def get_quality_settings(quality: str) -> QualitySettings:
    return _QUALITY_SETTINGS.get(quality, _QUALITY_SETTINGS[DEFAULT_QUALITY])


# ===========================================================================
# Engine Arguments
# ===========================================================================


def _build_decode_args(hw_accel: str, hw_decode: bool, vaapi_device: str) -> list[str]:
    """Hardware decode args (before -i). Empty for software decode."""
    if not hw_decode:
        return []
    if hw_accel == "nvenc":
        return ["-hwaccel", "cuda", "-hwaccel_output_format", "cuda"]
    if hw_accel == "qsv":
        return ["-hwaccel", "qsv", "-qsv_device", vaapi_device, "-hwaccel_output_format", "qsv"]
    if hw_accel == "vaapi":
        return [
            "-hwaccel",
            "vaapi",
            "-vaapi_device",
            vaapi_device,
            "-hwaccel_output_format",
            "vaapi",
        ]
    if hw_accel == "amf":
        return ["-hwaccel", "d3d11va"]
    if hw_accel == "videotoolbox":
        return ["-hwaccel", "videotoolbox"]
    return []


def _build_encode_args(options: EncodeOptions) -> list[str]:
    """Encoder selection and rate control args (after -i)."""
    q = get_quality_settings(options.quality)
    hw_q = str(q.crf + _HW_QUALITY_OFFSET)
    rate = ["-b:v", q.bitrate, "-maxrate", q.maxrate, "-bufsize", q.maxrate]

    if options.hw_accel == "nvenc":
        return [
            "-c:v",
            "h264_nvenc",
            "-preset",
            _NVENC_PRESETS.get(options.preset, "p5"),
            "-tune",
            "ull",
            "-rc",
            "vbr",
            "-cq",
            hw_q,
            *rate,
        ]

    if options.hw_accel == "qsv":
        preset = "veryfast" if options.preset == "ultrafast" else options.preset
        return ["-c:v", "h264_qsv", "-preset", preset, "-global_quality", hw_q, *rate]

    if options.hw_accel == "vaapi":
        # Frames must be on the GPU; hw decode output may already be vaapi surfaces
        vf = "format=nv12|vaapi,hwupload" if options.hw_decode else "format=nv12,hwupload"
        return ["-vf", vf, "-c:v", "h264_vaapi", "-qp", hw_q, *rate]

    if options.hw_accel == "amf":
        amf_quality = {"quality": "quality", "performance": "speed"}.get(options.quality, "balanced")
        return [
            "-c:v",
            "h264_amf",
            "-quality",
            amf_quality,
            "-rc",
            "vbr_latency",
            "-qp_i",
            str(q.crf),
            "-qp_p",
            str(q.crf + 2),
            *rate,
        ]

    if options.hw_accel == "videotoolbox":
        # VideoToolbox quality is 1-100, higher is better
        vt_q = max(1, min(100, 100 - q.crf * 3))
        return ["-c:v", "h264_videotoolbox", "-q:v", str(vt_q), *rate, "-realtime", "1"]

    return [
        "-c:v",
        "libx264",
        "-preset",
        options.preset,
        "-tune",
        "zerolatency",
        "-crf",
        str(q.crf),
        "-maxrate",
        q.maxrate,
        "-bufsize",
        q.maxrate,
    ]


def build_engine_args(
    options: EncodeOptions,
    vaapi_device: str = DEFAULT_VAAPI_DEVICE,
) -> tuple[list[str], list[str]]:
    """Build engine args. Returns (decode_args, encode_args)."""
    return (
        _build_decode_args(options.hw_accel, options.hw_decode, vaapi_device),
        _build_encode_args(options),
    )


# ===========================================================================
# Commands
# ===========================================================================


def build_hls_cmd(
    source_url: str,
    options: EncodeOptions,
    output_dir: str,
    user_agent: str | None = None,
    vaapi_device: str = DEFAULT_VAAPI_DEVICE,
) -> list[str]:
    """Build ffmpeg command for rolling-window live HLS output."""
    decode_args, encode_args = build_engine_args(options, vaapi_device)

    cmd = ["ffmpeg", "-hide_banner", "-loglevel", "warning"]
    cmd.extend(decode_args)
    cmd.extend(
        [
            "-reconnect",
            "1",
            "-reconnect_streamed",
            "1",
            "-reconnect_delay_max",
            "5",
        ]
    )
    if user_agent:
        cmd.extend(["-user_agent", user_agent])
    cmd.extend(["-i", source_url])

    # First video and audio only; subtitle/data streams break the HLS muxer
    cmd.extend(["-map", "0:v:0?", "-map", "0:a:0?"])
    cmd.extend(encode_args)
    cmd.extend(["-c:a", "aac", "-b:a", "128k", "-ar", "44100", "-ac", "2"])

    cmd.extend(
        [
            "-f",
            "hls",
            "-hls_time",
            str(_HLS_SEGMENT_DURATION_SEC),
            "-hls_list_size",
            str(_HLS_LIST_SIZE),
            "-hls_flags",
            # temp_file: segments appear under their final name only once complete
            "delete_segments+append_list+temp_file",
            "-hls_segment_filename",
            f"{output_dir}/{SEG_PREFIX}%03d{SEG_SUFFIX}",
            "-y",
            f"{output_dir}/{MANIFEST_NAME}",
        ]
    )
    return cmd


def build_remux_cmd(capture_path: str, output_path: str) -> list[str]:
    """Build ffmpeg command that remuxes a TS capture to MP4 without re-encoding."""
    return [
        "ffmpeg",
        "-hide_banner",
        "-loglevel",
        "error",
        "-i",
        capture_path,
        "-c:v",
        "copy",
        "-c:a",
        "copy",
        "-f",
        "mp4",
        "-movflags",
        "+faststart",
        "-y",
        output_path,
    ]
