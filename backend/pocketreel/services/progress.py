from __future__ import annotations

from ..models import Job, JobProgress


def report(job: Job) -> JobProgress:
    total = job.total_scenes
    return JobProgress(
        job_id=job.job_id,
        status=job.status,
        progress_percent=int(job.progress_percent),
        progress_message=job.progress_message,
        total_scenes=total,
        current_scene_index=job.current_scene_index,
        completed_count=len(job.completed_scenes),
        is_composing=job.status == "processing" and job.current_scene_index == total,
        result_video_url=job.result_video_url,
        result_duration=job.result_duration,
        error_message=job.error_message,
        created_at=job.created_at,
        updated_at=job.updated_at,
    )
