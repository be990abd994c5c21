from .session_sweep import start_session_sweep_worker
