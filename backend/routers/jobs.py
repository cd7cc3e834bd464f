"""Jobs router: manual trigger for scheduled jobs."""

import os
import hmac
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status

from jobs.reminder import ReminderJob

JOB_REMINDER_TRIGGER_TOKEN = os.getenv("JOB_REMINDER_TRIGGER_TOKEN", "").strip()


router = APIRouter(prefix="/jobs", tags=["jobs"])


def get_reminder_job() -> ReminderJob:
    return ReminderJob()


def get_trigger_token() -> str:
    return JOB_REMINDER_TRIGGER_TOKEN


def verify_job_token(
    x_job_token: Optional[str] = Header(default=None),
    authorization: Optional[str] = Header(default=None),
    expected: str = Depends(get_trigger_token)
) -> None:
    """Accept the trigger token from X-Job-Token or an Authorization bearer header."""
    if not expected:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Manual job trigger is disabled")

    provided = (x_job_token or "").strip()
    if not provided and authorization:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() == "bearer":
            provided = token.strip()

    if not provided or not hmac.compare_digest(provided, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid job token")


@router.post("/reminders/inactive-users/run", dependencies=[Depends(verify_job_token)])
def run_inactive_user_reminders(job: ReminderJob = Depends(get_reminder_job)):
    return job.run(trigger="http")
