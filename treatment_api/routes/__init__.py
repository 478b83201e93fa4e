# Routes package init
"""
Treatment AI Backend — API Routes Package
==========================================

Route Inventory:
    - auth.py:        /api/auth (request-otp, verify-login-otp,
                      login-with-password, validate-session, logout),
                      /api/profile/sessions
    - conditions.py:  /api/conditions (catalog, sync, user conditions)
    - medications.py: /api/medications (catalog, user list, scan-prescription)
    - accounts.py:    /api/accounts (invitations, links, permissions, access log)
    - timeline.py:    /api/health-timeline
    - sharing.py:     /api/share (internal, send-email, download-pdf)
    - upload.py:      /api/upload/file
    - wearables.py:   /api/webhooks/terra, /api/wearables
    - vector.py:      /api/vector/search
    - sdco.py:        /api/sdco/lookup
    - chat.py:        /api/chat/detect-answer
    - diagnostic.py:  /api/session/create, /api/session/refresh-diagnosis,
                      /api/diagnostic/next-question, /api/diagnostic/submit-answer
    - health.py:      /health

Routes stay thin: read the request, resolve the caller through
`deps.get_current_user`, call one service, shape the response. Errors are
raised as TreatmentAPIError subclasses and rendered by the handlers in
main.py.
"""
