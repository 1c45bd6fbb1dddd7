"""FFmpeg argument construction for a single segment."""

from pathlib import Path

from stream_archive.models import StreamSpec


def build_ffmpeg_command(
    stream: StreamSpec,
    destination: str | Path,
    ffmpeg_path: str = "ffmpeg",
) -> list[str]:
    """Build the FFmpeg invocation that records one segment of ``stream``.

    Video and audio are each dropped (``-vn``/``-an``), passed through
    unmodified (``copy``) or re-encoded with whatever codec, bitrate and
    geometry options are configured. Progress is written to stdout as
    ``key=value`` lines so the supervisor can follow it.
    """
    options = stream.encoding
    cmd = [ffmpeg_path, "-hide_banner", "-nostdin", "-y"]
    cmd += options.custom_input_options
    cmd += ["-i", stream.source]

    if stream.file_duration:
        cmd += ["-t", str(stream.file_duration)]
    if stream.format:
        cmd += ["-f", stream.format]

    if not options.record_video:
        cmd.append("-vn")
    elif not options.transcode_video:
        cmd += ["-c:v", "copy"]
    else:
        if options.video_codec:
            cmd += ["-c:v", options.video_codec]
        if options.video_resolution:
            cmd += ["-s", options.video_resolution]
        if options.video_fps:
            cmd += ["-r", str(options.video_fps)]
        if options.video_bitrate:
            cmd += ["-b:v", str(options.video_bitrate)]

    if not options.record_audio:
        cmd.append("-an")
    elif not options.transcode_audio:
        cmd += ["-c:a", "copy"]
    else:
        if options.audio_codec:
            cmd += ["-c:a", options.audio_codec]
        if options.audio_bitrate:
            cmd += ["-b:a", str(options.audio_bitrate)]
        if options.audio_channels:
            cmd += ["-ac", str(options.audio_channels)]

    cmd += options.custom_output_options
    cmd += ["-progress", "pipe:1", "-nostats", str(destination)]
    return cmd
