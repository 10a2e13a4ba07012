from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request

from .controller import DeliveryController
from .schemas import AddIn, AddOut, FileOut, RemoveOut, SessionOut, StatusOut

router = APIRouter(prefix="/sessions", tags=["sessions"])


def get_controller(request: Request) -> DeliveryController:
    return request.app.state.controller


@router.post("", response_model=AddOut, status_code=201)
async def add_session(body: AddIn, controller: DeliveryController = Depends(get_controller)):
    res = await controller.add(body.descriptor)
    return AddOut(
        id=res.id,
        name=res.name,
        status=res.status,
        primary_index=res.primary_index,
        files=[
            FileOut(
                index=f.index,
                name=f.name,
                path=f.path,
                size=f.size,
                size_formatted=f.size_formatted,
                is_media=f.is_media,
            )
            for f in res.files
        ],
    )


@router.get("", response_model=list[SessionOut])
async def list_sessions(controller: DeliveryController = Depends(get_controller)):
    return [
        SessionOut(
            id=s.id,
            name=s.name,
            created_at=s.created_at,
            file_count=len(s.files),
            active_streams=s.active_streams,
        )
        for s in controller.sessions()
    ]


@router.get("/{session_id}/status", response_model=StatusOut)
async def session_status(session_id: str, controller: DeliveryController = Depends(get_controller)):
    st = controller.status(session_id)
    return StatusOut(
        id=session_id.lower(),
        download_rate_bps=st.download_rate,
        upload_rate_bps=st.upload_rate,
        peer_count=st.peers,
        downloaded_bytes=st.downloaded_bytes,
        uploaded_bytes=st.uploaded_bytes,
        progress=st.progress,
    )


@router.get("/{session_id}/files/{file_index}")
async def stream_file(
    session_id: str,
    file_index: int,
    transcode: bool = Query(False),
    range: Optional[str] = Header(None),
    controller: DeliveryController = Depends(get_controller),
):
    return await controller.stream(session_id, file_index, wants_transcode=transcode, range_header=range)


@router.delete("/{session_id}", response_model=RemoveOut)
async def remove_session(session_id: str, controller: DeliveryController = Depends(get_controller)):
    return RemoveOut(removed=await controller.remove(session_id))
