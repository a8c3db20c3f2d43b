import pytest
from fastapi.testclient import TestClient

from vod_transcoder.api.main import create_app
from vod_transcoder.models import PipelineConfig, QueueConfig, StorageConfig
from vod_transcoder.service import build_services

from conftest import SMALL_LADDER, FakeRunner, RecordingPublisher


@pytest.fixture
def services(tmp_path):
    config = PipelineConfig(
        ladder=SMALL_LADDER,
        queue=QueueConfig(db_path=str(tmp_path / "queue.db"), poll_interval_s=0.01),
        storage=StorageConfig(
            upload_dir=str(tmp_path / "uploads"),
            output_root=str(tmp_path / "public" / "videos"),
            database_url=f"sqlite:///{tmp_path / 'videos.db'}",
        ),
    )
    svc = build_services(config, runner=FakeRunner(), publisher=RecordingPublisher())
    yield svc
    svc.close()


@pytest.fixture
def client(services):
    return TestClient(create_app(services))


def upload(client, **extra):
    data = {"title": "Holiday", "owner_id": "user-1", **extra}
    return client.post(
        "/videos",
        files={"file": ("holiday.mp4", b"fake video bytes" * 64, "video/mp4")},
        data=data,
    )


def run_next_job(services):
    job = services.queue.dequeue("test-worker", timeout=0)
    assert job is not None
    return services.pipeline.run(job, "test-worker")


def test_health_check(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_upload_accepted(client, services):
    response = upload(client)

    assert response.status_code == 202
    body = response.json()
    assert set(body) == {"videoId", "jobId"}

    video = services.videos.get_video(body["videoId"])
    assert video.status.value == "processing"
    assert video.owner_id == "user-1"
    assert video.title == "Holiday"

    job = services.queue.get_job(body["jobId"])
    assert job.state.value == "waiting"
    assert job.payload.video_id == body["videoId"]
    assert job.payload.uploader_id == "user-1"
    assert services.queue.get_job(body["jobId"]).payload.source_path.endswith(".mp4")


def test_job_status_payload(client):
    job_id = upload(client).json()["jobId"]

    response = client.get(f"/jobs/{job_id}")

    assert response.status_code == 200
    body = response.json()
    assert body["jobId"] == job_id
    assert body["state"] == "waiting"
    assert body["progress"] == 0
    assert body["data"]["title"] == "Holiday"
    assert body["data"]["userId"] == "user-1"
    assert body["result"] is None
    assert body["error"] is None
    assert body["attempts"] == 0
    assert body["createdAt"]


def test_unknown_job(client):
    response = client.get("/jobs/does-not-exist")

    assert response.status_code == 404
    assert response.json() == {"detail": "Job not found"}


def test_unknown_video(client):
    assert client.get("/videos/nope").status_code == 404


def test_end_to_end_publish(client, services):
    body = upload(client).json()

    result = run_next_job(services)

    assert result is not None
    status = client.get(f"/jobs/{body['jobId']}").json()
    assert status["state"] == "completed"
    assert status["progress"] == 100
    assert status["result"]["manifest_url"] == f"/videos/{body['videoId']}/index.m3u8"

    video = client.get(f"/videos/{body['videoId']}").json()
    assert video["status"] == "published"
    assert video["isPublished"] is True
    assert video["videoFile"]["url"] == f"/videos/{body['videoId']}/index.m3u8"
    assert set(video["videoFile"]["eager"]) == {"240p", "480p", "720p"}
    assert video["duration"] == 12

    manifest = client.get(f"/videos/{body['videoId']}/index.m3u8")
    assert manifest.status_code == 200
    assert manifest.text.startswith("#EXTM3U")


def test_published_urls_served(client, services):
    """The stored manifest and variant URLs resolve to the published files."""
    body = upload(client).json()
    run_next_job(services)

    video = client.get(f"/videos/{body['videoId']}").json()
    manifest = client.get(video["videoFile"]["url"])
    assert manifest.status_code == 200
    assert manifest.text.startswith("#EXTM3U")
    assert "720p.m3u8" in manifest.text

    for variant in video["videoFile"]["eager"].values():
        playlist = client.get(variant["url"])
        assert playlist.status_code == 200
        assert "#EXT-X-ENDLIST" in playlist.text

    job = client.get(f"/jobs/{body['jobId']}").json()
    assert client.get(job["result"]["manifest_url"]).status_code == 200


def test_resubmission_in_flight_conflicts(client, services):
    first = upload(client).json()

    response = upload(client, video_id=first["videoId"])

    assert response.status_code == 409
    detail = response.json()["detail"]
    assert detail["videoId"] == first["videoId"]
    assert detail["jobId"] == first["jobId"]
    assert services.queue.counts()["waiting"] == 1


def test_resubmission_after_completion(client, services):
    first = upload(client).json()
    run_next_job(services)

    response = upload(client, video_id=first["videoId"])

    assert response.status_code == 202
    assert response.json()["videoId"] == first["videoId"]
    assert response.json()["jobId"] != first["jobId"]


def test_invalid_video_id_rejected(client):
    response = upload(client, video_id="../escape")
    assert response.status_code == 422


def test_queue_stats(client):
    upload(client)
    upload(client)

    response = client.get("/queue/stats")

    assert response.status_code == 200
    assert response.json() == {"waiting": 2, "active": 0, "completed": 0, "failed": 0}
