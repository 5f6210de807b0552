"""
Background workers for recommendation pipeline runs.
Run via RQ (Redis Queue):

    rq worker recommendations --url $REDIS_URL
"""
