from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.templating import Jinja2Templates

from queuematic.dependencies import get_queue_engine, get_templates
from queuematic.services.queue_engine import QueueEngine

router = APIRouter(tags=['display'])

DISPLAY_REFRESH_SECONDS = 5


@router.get('/display/{branch_id}')
def display_board(
    branch_id: int,
    request: Request,
    templates: Jinja2Templates = Depends(get_templates),
    engine: QueueEngine = Depends(get_queue_engine),
):
    board = engine.branch_display(branch_id)
    return templates.TemplateResponse(
        request,
        'display.html',
        {
            'board': board,
            'refresh_seconds': DISPLAY_REFRESH_SECONDS,
        },
    )
