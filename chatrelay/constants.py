# chatrelay protocol constants

# Bot mention marker and the reserved identity bot replies are sent from.
BOT_MARKER = "@bot"
BOT_NAME = "🤖 @bot"

# Private message directive: /msg <target> <text>
# ASCII word characters only for the target token.
PRIVATE_DIRECTIVE = "/msg"
PRIVATE_PREFIX = "(Private)"
PRIVATE_SELF = "You"

FALLBACK_REPLY = "I encountered an error processing your request."

USERNAME_MAX_CHARS = 32

# Context assembly modes for the responder.
CONTEXT_RECENCY = "recency"
CONTEXT_RETRIEVAL = "retrieval"
CONTEXT_MODES = (CONTEXT_RECENCY, CONTEXT_RETRIEVAL)

# History store backends.
STORE_MEMORY = "memory"
STORE_LOGFILE = "logfile"
STORE_MONGODB = "mongodb"
STORE_BACKENDS = (STORE_MEMORY, STORE_LOGFILE, STORE_MONGODB)

DEFAULT_SYSTEM_PROMPT = "You are a helpful AI chatbot that remembers previous messages."

# Envelope kinds, derived from body syntax at ingress.
KIND_BROADCAST = "broadcast"
KIND_PRIVATE = "private"
KIND_BOT_QUERY = "bot_query"
