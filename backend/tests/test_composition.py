from __future__ import annotations

import pytest

from conftest import scenario_a_input
from pocketreel.models import Job, SceneResult
from pocketreel.services.composition import (
    CaptionCue,
    build_composition_request,
    build_render_request,
    caption_track,
    format_srt_time,
    scene_offsets,
    to_srt,
)
from pocketreel.services.render_service import CAPTION_STYLES, ken_burns_effect
from pocketreel.services.transcription_service import WordTiming


def _scenes() -> list[SceneResult]:
    return [
        SceneResult(
            scene_index=0,
            kind="talking_head",
            clip_url="https://clips.example.com/0.mp4",
            audio_url="https://audio.example.com/0.mp3",
            duration_seconds=3.2,
            text="Welcome to the channel.",
        ),
        SceneResult(
            scene_index=1,
            kind="static_asset",
            clip_url="https://assets.example.com/product.jpg",
            audio_url="https://audio.example.com/1.mp3",
            duration_seconds=4.7,
            text="Here is the product up close.",
        ),
        SceneResult(
            scene_index=2,
            kind="talking_head",
            clip_url="https://clips.example.com/2.mp4",
            audio_url="https://audio.example.com/2.mp3",
            duration_seconds=2.9,
            text="Thanks for watching, see you soon.",
        ),
    ]


def _completed_job(**overrides) -> Job:
    return Job(
        job_id="job-1",
        status="processing",
        input=scenario_a_input(**overrides),
        current_scene_index=3,
        completed_scenes=_scenes(),
    )


def test_scene_offsets_are_running_sums_of_measured_durations():
    scenes = _scenes()

    offsets = scene_offsets(scenes)

    assert offsets[0] == 0.0
    assert offsets[1] == pytest.approx(3.2)
    assert offsets[2] == pytest.approx(3.2 + 4.7)
    assert offsets[2] + scenes[2].duration_seconds == pytest.approx(10.8)


def test_caption_cues_start_at_scene_offsets_and_stay_inside_scenes():
    scenes = _scenes()
    offsets = scene_offsets(scenes)

    cues = caption_track(scenes)

    words_per_scene = [len(scene.text.split()) for scene in scenes]
    assert len(cues) == sum(words_per_scene)
    start = 0
    for scene, offset, count in zip(scenes, offsets, words_per_scene):
        scene_cues = cues[start : start + count]
        assert scene_cues[0].start == pytest.approx(offset)
        assert scene_cues[-1].end == pytest.approx(offset + scene.duration_seconds)
        assert all(offset - 1e-3 <= cue.start <= cue.end <= offset + scene.duration_seconds + 1e-3 for cue in scene_cues)
        start += count
    assert cues[-1].end == pytest.approx(10.8)


def test_word_timings_are_shifted_by_scene_offset():
    scenes = _scenes()
    timings = {1: [WordTiming("Here", 0.1, 0.4), WordTiming("is", 0.4, 0.6)]}

    cues = caption_track(scenes, timings)

    scene_one = [cue for cue in cues if cue.text in {"Here", "is"}]
    assert scene_one[0] == CaptionCue("Here", 3.3, 3.6)
    assert scene_one[1] == CaptionCue("is", 3.6, 3.8)


def test_format_srt_time():
    assert format_srt_time(0) == "00:00:00,000"
    assert format_srt_time(3.2) == "00:00:03,200"
    assert format_srt_time(3661.5) == "01:01:01,500"


def test_to_srt_groups_four_words_per_phrase():
    cues = [CaptionCue(f"w{index}", index * 0.5, index * 0.5 + 0.5) for index in range(6)]

    srt = to_srt(cues)

    assert srt == (
        "1\n00:00:00,000 --> 00:00:02,000\nw0 w1 w2 w3\n"
        "\n"
        "2\n00:00:02,000 --> 00:00:03,000\nw4 w5\n"
    )
    assert to_srt([]) == ""


def test_render_request_document_shape():
    request = build_composition_request(_completed_job())

    movie = build_render_request(request, webhook_url="https://hooks.example.com/api/webhooks/render-complete").movie

    assert (movie["width"], movie["height"]) == (1080, 1920)
    assert movie["fps"] == 30
    assert [scene["duration"] for scene in movie["scenes"]] == [3.2, 4.7, 2.9]

    head_elements = movie["scenes"][0]["elements"]
    assert head_elements[0] == {
        "type": "video",
        "src": "https://clips.example.com/0.mp4",
        "resize": "cover",
        "media-duration": "exact",
    }
    assert not any(item.get("src") == "https://audio.example.com/0.mp3" for item in head_elements)

    asset_elements = movie["scenes"][1]["elements"]
    assert asset_elements[0]["type"] == "image"
    assert asset_elements[0]["zoom"] == ken_burns_effect(1)["zoom"]
    assert asset_elements[1] == {
        "type": "audio",
        "src": "https://audio.example.com/1.mp3",
        "start": 0,
        "duration": -1,
        "volume": 1,
    }
    assert asset_elements[-1]["volume"] == 0.4

    music = movie["elements"][0]
    assert music["type"] == "audio"
    assert music["volume"] == 0.12
    assert music["loop"] == -1
    subtitles = movie["elements"][1]
    assert subtitles["type"] == "subtitles"
    assert subtitles["settings"] == CAPTION_STYLES["bold-classic"]
    assert subtitles["captions"].startswith("1\n00:00:00,000 --> ")


def test_render_request_respects_flags_and_aspect_ratio():
    job = _completed_job(
        enable_captions=False,
        enable_background_music=False,
        aspect_ratio="16:9",
        caption_style="vibrant",
    )

    movie = build_render_request(build_composition_request(job)).movie

    assert (movie["width"], movie["height"]) == (1920, 1080)
    assert movie["elements"] == []


def test_background_music_override_is_used():
    job = _completed_job(background_music_url="https://music.example.com/theme.mp3")

    request = build_composition_request(job)

    assert request.background_music_url == "https://music.example.com/theme.mp3"
    assert request.total_duration == pytest.approx(10.8)


def test_ken_burns_effects_rotate():
    assert ken_burns_effect(0) == ken_burns_effect(8)
    assert ken_burns_effect(0) != ken_burns_effect(1)
