from fastapi import Request

from cadence.services.queue_service import JobQueue


def get_message_queue(request: Request) -> JobQueue:
    return request.app.state.message_queue


def get_sequence_queue(request: Request) -> JobQueue:
    return request.app.state.sequence_queue
