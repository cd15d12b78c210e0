"""Deployment orchestration: classification, status resolution, dispatch,
polling, planning, and plan streaming."""
