from hypothesis import HealthCheck, settings

# Hypothesis' one-time cache initialisation on a fresh checkout trips the
# too_slow health check on the first generated example.
settings.register_profile("default", suppress_health_check=[HealthCheck.too_slow])
settings.load_profile("default")
