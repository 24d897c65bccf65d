"""
병합 계획 모듈 단위 테스트

검증 항목:
- 사운드 이벤트마다 입력 하나 + 스트림 필터 (atrim -> afade -> adelay -> volume)
- amix는 항상 normalize=0
- 원본 캡처는 마지막 입력, 비디오는 재인코딩 없이 복사
- 코덱별 오디오 인자와 인자 순서 (출력 경로가 마지막)
- 마지막 배경음악 페이드아웃 min(2, 길이 - 0.001)
- 배치 분할과 이전 배치 출력 연결 (오디오 전용 포함)
- 긴 필터 그래프는 -filter_complex_script 파일로 전달
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from avpublish.config.schema import AppConfig
from avpublish.merge.planner import MergePlanner, last_music_index
from avpublish.profile import Codec
from avpublish.timeline import SoundLogItem

SESSION_START = datetime(2024, 3, 1, 10, 0, 0, tzinfo=timezone.utc)


def _item(src: str, offset: float, duration: float = None, volume: float = 1.0) -> SoundLogItem:
    start = SESSION_START + timedelta(seconds=offset)
    end = start + timedelta(seconds=duration) if duration is not None else None
    return SoundLogItem(
        src=src,
        volume=volume,
        start_time=start,
        end_time=end,
        start_offset=timedelta(seconds=offset),
    )


def _make_config(**merge) -> AppConfig:
    return AppConfig(**{"merge": merge})


@pytest.fixture
def planner():
    return MergePlanner(AppConfig())


# =========================================================================
# 단일 병합 레시피
# =========================================================================

class TestPlan:
    def test_single_narration_with_video(self, planner):
        recipe = planner.plan(
            [_item("/n1.mp3", 1.5)], True, Codec.H264,
            video_path="/work/capture.mp4", output_path="/work/final.mp4",
        )
        assert recipe.inputs == ["/n1.mp3", "/work/capture.mp4"]
        assert recipe.filter_graph == "[0:a]adelay=1500:all=1[a0]; [a0]amix=inputs=1:normalize=0[out]"
        assert recipe.to_args() == [
            "-i", "/n1.mp3",
            "-i", "/work/capture.mp4",
            "-filter_complex", recipe.filter_graph,
            "-map", "1:v", "-vcodec", "copy",
            "-map", "[out]",
            "/work/final.mp4",
        ]

    def test_music_trim_fade_and_volume(self, planner):
        """종료 시각이 있는 마지막 이벤트(배경음악)는 잘린 지점에서 페이드아웃된다."""
        recipe = planner.plan(
            [_item("/music.mp3", 0, duration=30, volume=0.3), _item("/n1.mp3", 1.5)],
            True, Codec.H264, video_path="/raw.mp4", output_path="/final.mp4",
        )
        assert recipe.filter_graph == (
            "[0:a]atrim=end=30,afade=t=out:st=28:d=2,adelay=0:all=1,volume=0.3[a0]; "
            "[1:a]adelay=1500:all=1[a1]; "
            "[a0][a1]amix=inputs=2:normalize=0[out]"
        )

    def test_short_music_fade_shorter_than_two_seconds(self, planner):
        recipe = planner.plan(
            [_item("/music.mp3", 2, duration=1.5)], False, Codec.MP3, output_path="/final.mp3",
        )
        assert "atrim=end=1.5,afade=t=out:st=0.001:d=1.499,adelay=2000:all=1" in recipe.filter_graph

    def test_only_last_music_fades(self, planner):
        events = [_item("/m1.mp3", 0, duration=10), _item("/m2.mp3", 10, duration=10)]
        recipe = planner.plan(events, False, Codec.MP3, output_path="/final.mp3")
        stream_filters = recipe.filter_graph.split("; ")
        assert "afade" not in stream_filters[0]
        assert "afade" in stream_filters[1]

    def test_normalize_always_zero(self, planner):
        events = [_item(f"/n{i}.mp3", i) for i in range(5)]
        recipe = planner.plan(events, False, Codec.MP3, output_path="/final.mp3")
        assert "amix=inputs=5:normalize=0[out]" in recipe.filter_graph
        assert "normalize=1" not in recipe.filter_graph

    def test_audio_only_mp3_args(self, planner):
        recipe = planner.plan([_item("/n1.mp3", 0)], False, Codec.MP3, output_path="/final.mp3")
        args = recipe.to_args()
        assert "-vcodec" not in args
        assert args[-7:] == ["-acodec", "libmp3lame", "-b:a", "64k", "-map", "[out]", "/final.mp3"]

    def test_h263_audio_args(self, planner):
        recipe = planner.plan(
            [_item("/n1.mp3", 0)], True, Codec.H263, video_path="/raw.3gp", output_path="/final.3gp",
        )
        args = recipe.to_args()
        assert args[args.index("-acodec"):args.index("-acodec") + 4] == ["-acodec", "aac", "-ar", "8000"]

    def test_volume_one_has_no_volume_filter(self, planner):
        recipe = planner.plan([_item("/n1.mp3", 0, volume=1.0)], False, Codec.MP3, output_path="/o.mp3")
        assert "volume=" not in recipe.filter_graph

    def test_empty_events_rejected(self, planner):
        with pytest.raises(ValueError):
            planner.plan([], True, Codec.H264, video_path="/raw.mp4", output_path="/final.mp4")

    def test_video_path_required(self, planner):
        with pytest.raises(ValueError):
            planner.plan([_item("/n1.mp3", 0)], True, Codec.H264, output_path="/final.mp4")

    def test_progress_argument_before_output(self, planner):
        recipe = planner.plan([_item("/n1.mp3", 0)], False, Codec.MP3, output_path="/final.mp3")
        args = recipe.to_args(progress_path="/work/progress.txt")
        assert args[-3:] == ["-progress", "/work/progress.txt", "/final.mp3"]


def test_last_music_index():
    events = [_item("/m.mp3", 0, duration=5), _item("/n.mp3", 1)]
    assert last_music_index(events) == 0
    assert last_music_index([_item("/n.mp3", 1)]) is None


# =========================================================================
# 배치 분할
# =========================================================================

class TestPlanBatches:
    def test_single_batch_when_small(self, planner, tmp_path):
        recipes = planner.plan_batches(
            [_item("/n1.mp3", 0)], True, Codec.H264,
            video_path="/raw.mp4", output_path="/final.mp4", work_dir=str(tmp_path),
        )
        assert len(recipes) == 1
        assert recipes[0].output_path == "/final.mp4"
        assert recipes[0].carried_index is None

    def test_batches_chain_previous_output_with_video(self, tmp_path):
        planner = MergePlanner(_make_config(batch_size=2))
        events = [_item(f"/n{i}.mp3", i) for i in range(5)]
        recipes = planner.plan_batches(
            events, True, Codec.H264,
            video_path="/raw.mp4", output_path="/final.mp4", work_dir=str(tmp_path),
        )
        assert len(recipes) == 3
        pass1 = str(tmp_path / "merge_pass1.mp4")
        pass2 = str(tmp_path / "merge_pass2.mp4")

        assert recipes[0].inputs == ["/n0.mp3", "/n1.mp3", "/raw.mp4"]
        assert recipes[0].output_path == pass1

        # 두 번째 배치는 이전 출력에서 비디오와 오디오를 모두 이어받음
        assert recipes[1].inputs == ["/n2.mp3", "/n3.mp3", pass1]
        assert recipes[1].video_index == 2
        assert recipes[1].filter_graph.endswith("[a0][a1][2:a]amix=inputs=3:normalize=0[out]")
        assert recipes[1].output_path == pass2

        assert recipes[2].inputs == ["/n4.mp3", pass2]
        assert recipes[2].output_path == "/final.mp4"

    def test_batches_chain_audio_only(self, tmp_path):
        """오디오 전용 출력도 이전 배치 결과를 이어서 섞는다."""
        planner = MergePlanner(_make_config(batch_size=2))
        events = [_item(f"/n{i}.mp3", i) for i in range(3)]
        recipes = planner.plan_batches(
            events, False, Codec.MP3, output_path="/final.mp3", work_dir=str(tmp_path),
        )
        assert len(recipes) == 2
        carried = str(tmp_path / "merge_pass1.mp3")
        assert recipes[1].inputs == ["/n2.mp3", carried]
        assert recipes[1].video_index is None
        assert recipes[1].carried_index == 1
        assert "[a0][1:a]amix=inputs=2:normalize=0[out]" in recipes[1].filter_graph

    def test_fade_applied_in_owning_batch(self, tmp_path):
        planner = MergePlanner(_make_config(batch_size=2))
        events = [_item("/n0.mp3", 0), _item("/n1.mp3", 1), _item("/n2.mp3", 2), _item("/m.mp3", 3, duration=20)]
        recipes = planner.plan_batches(
            events, False, Codec.MP3, output_path="/final.mp3", work_dir=str(tmp_path),
        )
        assert "afade" not in recipes[0].filter_graph
        assert "[1:a]atrim=end=20,afade=t=out:st=18:d=2" in recipes[1].filter_graph


# =========================================================================
# 트랜스코더 레시피 변환
# =========================================================================

class TestToTranscoderRecipe:
    def test_inline_filter_graph_and_progress_file(self, planner, tmp_path):
        recipe = planner.plan([_item("/n1.mp3", 0)], False, Codec.MP3, output_path="/final.mp3")
        transcoder_recipe = planner.to_transcoder_recipe(recipe, str(tmp_path), pass_number=1, total_passes=2)
        assert "-filter_complex" in transcoder_recipe.args
        assert transcoder_recipe.progress_path == str(tmp_path / "progress_pass1.txt")
        assert transcoder_recipe.description == "merge 1/2"
        assert transcoder_recipe.args[-1] == "/final.mp3"

    def test_long_filter_graph_written_to_script(self, tmp_path):
        planner = MergePlanner(_make_config(filter_script_threshold=10))
        recipe = planner.plan([_item("/n1.mp3", 0)], False, Codec.MP3, output_path="/final.mp3")
        transcoder_recipe = planner.to_transcoder_recipe(recipe, str(tmp_path))
        script = tmp_path / "filter_pass1.txt"
        assert script.read_text(encoding="utf-8") == recipe.filter_graph
        index = transcoder_recipe.args.index("-filter_complex_script")
        assert transcoder_recipe.args[index + 1] == str(script)
        assert "-filter_complex" not in transcoder_recipe.args
