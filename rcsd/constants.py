# RCS protocol constants (envelope keys, event names, reasons)

RCS_VERSION = 1

# Envelope keys
K_V = 0
K_T = 1
K_ID = 2
K_TS = 3
K_SRC = 4
K_BODY = 5

# Inbound events
E_REGISTER_CLIENT = "register-client"
E_REGISTER_AGENT = "register-agent"
E_CALL_REQUEST = "call-request"
E_AGENT_CALL_AGENT = "agent-call-agent"
E_ACCEPT_CALL = "accept-call"
E_ACCEPT_AGENT_CALL = "accept-agent-call"
E_REJECT_CALL = "reject-call"
E_REJECT_AGENT_CALL = "reject-agent-call"
E_END_CALL = "end-call"
E_CANCEL_CALL_REQUEST = "cancel-call-request"
E_CANCEL_AGENT_CALL = "cancel-agent-call"
E_RESET_BUSY_STATE = "reset-busy-state"
E_CHECK_STATUS = "check-status"

# Negotiation relay (pass-through, both directions)
E_OFFER = "offer"
E_ANSWER = "answer"
E_ICE_CANDIDATE = "ice-candidate"

# Outbound events
E_NEW_CLIENT = "new-client"
E_NEW_AGENT = "new-agent"
E_CURRENT_CLIENTS = "current-clients"
E_CURRENT_AGENTS = "current-agents"
E_INCOMING_CALL = "incoming-call"
E_INCOMING_AGENT_CALL = "incoming-agent-call"
E_CALL_REQUEST_SENT = "call-request-sent"
E_CALL_REQUEST_QUEUED = "call-request-queued"
E_AGENT_CALL_SENT = "agent-call-sent"
E_BUSY = "busy"
E_OFFLINE = "offline"
E_CALL_ACCEPTED = "call-accepted"
E_CALL_HANDLED = "call-handled"
E_CALL_REJECTED = "call-rejected"
E_AGENT_CALL_ACCEPTED = "agent-call-accepted"
E_AGENT_CALL_REJECTED = "agent-call-rejected"
E_CALL_REQUEST_CANCELLED = "call-request-cancelled"
E_AGENT_CALL_CANCELLED = "agent-call-cancelled"
E_CALL_ENDED = "call-ended"
E_CALL_TIMEOUT = "call-timeout"
E_AGENT_DISCONNECTED = "agent-disconnected"
E_CLIENT_DISCONNECTED = "client-disconnected"
E_STATUS_CHANGED = "status-changed"
E_STATUS_REPLY = "status-reply"
E_ERROR = "error"

# Call kinds
CALL_AUDIO = "audio"
CALL_VIDEO = "video"
CALL_KINDS = (CALL_AUDIO, CALL_VIDEO)

# Reasons carried in cancellation / end notifications
REASON_TIMEOUT = "timeout"
REASON_USER_CANCELLED = "user-cancelled"
REASON_DISCONNECT = "disconnect"
REASON_SUPERSEDED = "superseded"
REASON_BUSY = "busy"
REASON_RESET = "reset"
REASON_UNKNOWN = "unknown"

# call-ended "callType" values
CALL_PAIR_CLIENT_AGENT = "client-agent"
CALL_PAIR_AGENT_AGENT = "agent-agent"
