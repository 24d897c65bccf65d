"""
녹화 제어 API 패키지

구성:
- RecordingApi: 프레젠테이션 계층/호스트 UI가 캡처 세션을 제어하는 FastAPI 앱
"""

from avpublish.api.recording_api import RecordingApi

__all__ = ["RecordingApi"]
