from __future__ import annotations

import time
from pathlib import Path

import streamlit as st

from route_replay.breaks import iter_breaks_from_csv
from route_replay.clock import ClockParams
from route_replay.ingest import build_track, load_geo_points
from route_replay.models import DEFAULT_TZ, EVENT_COLOR, EVENT_FLASH_COLOR, FULL_ROUTE_COLOR, BreakPeriod, GeoPoint
from route_replay.replay import ReplayConfig, ReplayFrame, ReplaySession, parse_event_times, run_loop
from route_replay.snapping import DirectoryBackup, RoadSnapper, RoadsApiConfig, SnapCacheStore
from route_replay.timeutils import day_key, dt_from_epoch_ms, format_hhmmss


@st.cache_data(show_spinner=False)
def _load_points(csv_path: str, mtime: float) -> list[GeoPoint]:
    _ = mtime  # part of cache key so updated files reload automatically
    points, _summary = load_geo_points(csv_path)
    return points


@st.cache_data(show_spinner=False)
def _load_breaks(breaks_csv: str, tz_name: str, mtime: float) -> list[BreakPeriod]:
    _ = mtime
    return list(iter_breaks_from_csv(breaks_csv, tz_name))


@st.cache_resource(show_spinner=False)
def _snapper(cache_dir: str, backup_dir: str, tz_name: str) -> RoadSnapper:
    # one store per cache directory for the whole server process; modified
    # months are written by the autoflush thread
    store = SnapCacheStore(cache_dir, DirectoryBackup(backup_dir) if backup_dir else None, tz_name=tz_name)
    store.init()
    store.start_autoflush(30.0)
    return RoadSnapper(store, RoadsApiConfig.from_env())


def _fmt(epoch_ms: float, tz_name: str) -> str:
    return dt_from_epoch_ms(epoch_ms, tz_name).strftime("%H:%M:%S")


def _map_data(session: ReplaySession, frame: ReplayFrame) -> dict[str, list[object]]:
    """Columns for st.map: drawn paths, faint full route, markers on top."""

    lat: list[object] = []
    lon: list[object] = []
    color: list[object] = []
    size: list[object] = []
    for line in session.full_route():
        for a, b in line.coords:
            lat.append(a)
            lon.append(b)
            color.append(FULL_ROUTE_COLOR)
            size.append(2)
    for line in frame.polylines:
        for a, b in line.coords:
            lat.append(a)
            lon.append(b)
            color.append(line.color)
            size.append(line.weight + 2)
    for m in frame.positions:
        lat.append(m.point.latitude)
        lon.append(m.point.longitude)
        color.append(m.policy.color)
        size.append(40)
    for ev in frame.events:
        lat.append(ev.latitude)
        lon.append(ev.longitude)
        color.append(EVENT_FLASH_COLOR if ev.flashing else EVENT_COLOR)
        size.append(80 if ev.flashing else 20)
    return {"lat": lat, "lon": lon, "color": color, "size": size}


def _render(session: ReplaySession, frame: ReplayFrame, tz_name: str, slot) -> None:
    with slot.container():
        s = frame.state
        c1, c2, c3, c4 = st.columns(4)
        c1.metric("Time", _fmt(s.current_ms, tz_name))
        c2.metric("State", s.phase.value if s.pause_reason.value == "none" else f"{s.phase.value} ({s.pause_reason.value})")
        c3.metric("Activity", frame.activity or "-")
        c4.metric("Markers", str(len(frame.positions)))
        st.map(_map_data(session, frame), latitude="lat", longitude="lon", color="color", size="size")


def _session_for(track_key: str, build) -> ReplaySession:
    cached = st.session_state.get("replay")
    if cached is None or cached[0] != track_key:
        st.session_state["replay"] = (track_key, build())
    return st.session_state["replay"][1]


def main() -> None:
    st.set_page_config(page_title="Route replay", layout="wide")
    st.title("Route replay: one day of field work")

    with st.sidebar:
        st.subheader("Data")
        tz_name = st.text_input("Time zone (IANA)", value=DEFAULT_TZ)
        track_csv = st.text_input("Tracking CSV", value="sample_data/track.csv")
        breaks_csv = st.text_input("Authoritative breaks CSV (optional)", value="")
        subject = st.text_input("Subject id", value="default")

        st.subheader("Playback")
        rate = st.number_input("Wall seconds per track hour", value=5.0, min_value=0.5, step=0.5)
        fps = st.number_input("Frames per second", value=10.0, min_value=1.0, max_value=60.0, step=1.0)
        dwell_on_breaks = st.checkbox("Pause at break starts", value=False)
        events_text = st.text_area("Event times (one per line, epoch ms or YYYY-MM-DD HH:MM:SS)", value="")

        st.subheader("Road snapping")
        snap_enabled = st.checkbox("Snap gaps to roads", value=False)
        cache_dir = st.text_input("Snap cache directory", value="snap_cache")
        backup_dir = st.text_input("Backup directory (optional)", value="")

    p = Path(track_csv)
    if not p.exists():
        st.error(f"File not found: {track_csv!r}. Generate one with scripts/generate_sample_track_csv.py.")
        return

    try:
        points = _load_points(track_csv, p.stat().st_mtime)
    except Exception as exc:
        st.exception(exc)
        return
    if not points:
        st.warning("No valid points in this file.")
        return

    days = sorted({day_key(pt.timestamp_ms, tz_name) for pt in points})
    day = st.selectbox("Day", days, index=len(days) - 1)
    day_points = [pt for pt in points if day_key(pt.timestamp_ms, tz_name) == day]
    track = build_track(day_points, subject, day)

    authoritative = None
    if breaks_csv:
        bp = Path(breaks_csv)
        if bp.exists():
            authoritative = _load_breaks(breaks_csv, tz_name, bp.stat().st_mtime)
        else:
            st.warning(f"Breaks file not found: {breaks_csv!r}; using detected breaks.")

    try:
        events = parse_event_times(events_text, tz_name)
    except ValueError as exc:
        st.warning(f"Ignoring event times: {exc}")
        events = []

    config = ReplayConfig(
        tz_name=tz_name,
        clock=ClockParams(rate_seconds_per_hour=float(rate)),
        dwell_on_breaks=dwell_on_breaks,
    )
    track_key = f"{track_csv}|{day}|{subject}|{track.signature}|{rate}|{dwell_on_breaks}|{breaks_csv}|{events}"
    session = _session_for(
        track_key,
        lambda: ReplaySession(track, config, authoritative_breaks=authoritative, events=events),
    )

    if snap_enabled and st.sidebar.button("Request snapping", use_container_width=True):
        snapper = _snapper(cache_dir, backup_dir, tz_name)
        with st.spinner("Snapping gaps to roads ..."):
            result = snapper.submit(track.subject_id, track.day, track.points).result()
        session.apply_snap_result(result, snapper.tracker)
        if result.status_message:
            st.warning(result.status_message)

    t = st.slider(
        "Position",
        min_value=track.start_ms,
        max_value=track.end_ms,
        value=int(session.clock.current_ms),
        step=1000,
    )
    if t != int(session.clock.current_ms):
        session.seek(t)

    b1, b2, b3 = st.columns(3)
    step_back = b1.button("< Previous point", use_container_width=True)
    play = b2.button("Play", type="primary", use_container_width=True)
    step_fwd = b3.button("Next point >", use_container_width=True)
    if step_back:
        session.step(-1)
    if step_fwd:
        session.step(1)

    slot = st.empty()
    if play:
        last = {"at": 0.0}

        def on_frame(frame: ReplayFrame) -> None:
            now = time.monotonic()
            if now - last["at"] >= 0.5:
                _render(session, frame, tz_name, slot)
                last["at"] = now

        frame = run_loop(session, float(fps), on_frame)
    else:
        frame = session.tick()
    _render(session, frame, tz_name, slot)

    st.subheader("Snapping")
    c1, c2, c3 = st.columns(3)
    c1.metric("API calls", str(frame.snap.api_calls_used))
    c2.metric("Cost (cents)", f"{frame.snap.cost_cents:.2f}")
    c3.metric("Snapped segments", str(frame.snap.segment_count))

    st.subheader("Breaks")
    if not frame.breaks:
        st.caption("No breaks on this day.")
    rows = []
    for b in frame.breaks:
        first = b.period.annotations[0] if b.period.annotations else None
        rows.append(
            {
                "#": b.index,
                "start": _fmt(b.period.start_ms, tz_name),
                "end": _fmt(b.period.end_ms, tz_name),
                "duration": format_hhmmss(b.period.duration_ms / 1000.0),
                "place": first.place_name if first else "",
                "now": "yes" if b.highlighted else "",
                "source": b.period.method,
            }
        )
    if rows:
        st.dataframe(rows, use_container_width=True)
        idx = st.number_input("Focus break #", min_value=0, max_value=len(rows) - 1, value=0, step=1)
        if st.button("Play this break"):
            session.focus_break(int(idx))
            frame = run_loop(session, float(fps))
            _render(session, frame, tz_name, slot)

    st.subheader("Activity")
    st.dataframe(
        [
            {
                "kind": iv.kind,
                "start": _fmt(iv.start_ms, tz_name),
                "end": _fmt(iv.end_ms, tz_name),
                "duration": format_hhmmss(iv.duration_ms / 1000.0),
            }
            for iv in session.activity
        ],
        use_container_width=True,
    )

    st.caption(
        "The slider seeks; Play runs the clock until the end of the day (or of the focused break). "
        "Breaks are primary-device gaps of at least 20 minutes unless an authoritative list is given."
    )


if __name__ == "__main__":
    main()
