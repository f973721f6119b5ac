"""
Static reply texts and keyword tables used by the assistant.

Everything here is plain data, loaded once at import.
"""

GREETING_WORDS = [
    "hi",
    "hello",
    "hey",
    "good morning",
    "good afternoon",
    "good evening",
]
GREETING_MAX_LENGTH = 30

CAPABILITY_PHRASES = [
    "what else do you know",
    "what can you help",
    "what do you know",
    "what topics",
    "what can you answer",
]

SERVICE_KEYWORDS = [
    "services",
    "products",
    "what do you do",
    "what do you offer",
    "solutions",
    "consulting",
]

QUESTION_WORDS = ["what", "how", "when", "where", "why", "can", "do", "does", "is", "are"]

# Synonyms appended to a query before searching, keyed by classified intent
INTENT_EXPANSIONS = {
    "pricing_inquiry": ["cost", "price", "pricing", "budget", "expensive", "cheap", "quote", "estimate", "fee"],
    "product_inquiry": ["services", "products", "solutions", "features", "capabilities", "offerings", "what we do"],
    "demo_request": ["demo", "trial", "test", "preview", "show", "demonstration", "try"],
    "technical_support": ["help", "support", "problem", "issue", "error", "bug", "troubleshoot", "fix"],
    "implementation_help": ["setup", "install", "configure", "deploy", "implementation", "integration"],
    "account_management": ["account", "billing", "payment", "subscription", "invoice", "cancel"],
    "hr_policy": ["leave", "vacation", "sick", "annual", "policy", "employee", "work", "office", "time off", "holiday"],
    "complaint": ["complain", "frustrated", "angry", "disappointed", "terrible", "awful", "bad", "dissatisfied"],
}

PHRASE_EXPANSIONS = {
    "types of": "what available allowed different kinds",
}

INTENT_TAXONOMY = {
    "pricing_inquiry": "Questions about cost, pricing, budget, quotes",
    "product_inquiry": "Questions about services, features, capabilities, what you offer",
    "demo_request": "Requests for demos, trials, testing, previews",
    "technical_support": "Help with problems, issues, errors, bugs, troubleshooting",
    "implementation_help": "Setup, installation, configuration, deployment, integration",
    "account_management": "Billing, payments, subscriptions, account issues",
    "complaint": "Expressions of frustration, disappointment, anger, dissatisfaction",
    "human_request": "Explicit requests to talk to humans, agents, representatives",
    "hr_policy": "Questions about company policies, leaves, work rules, employee guidelines",
    "greeting": "Simple greetings and pleasantries",
    "general_inquiry": "General questions that don't fit other categories",
}

# Phrases that mark a generated answer as a non-answer
NO_ANSWER_PHRASES = [
    "i don't have",
    "no information",
    "not contain",
    "does not contain",
    "i am sorry",
    "i'm sorry",
    "no details",
    "not available",
    "cannot find",
    "no specific information",
]

GREETING_REPLY = "Hi there! \U0001F44B How can I help you today?"

CAPABILITY_REPLY = (
    "I can help you with questions about company policies, office procedures, "
    "employee guidelines, and workplace information. Feel free to ask me anything specific!"
)

SERVICE_REPLY = (
    "We specialize in ERP solutions and digital transformation. Our main services include:\n\n"
    "• **Enterprise ERP** - Implementation for large organisations\n"
    "• **SMB ERP** - Packaged solutions for small and mid-sized businesses\n"
    "• **HR Management** - Human resource systems\n"
    "• **Implementation & Support** - End-to-end services\n"
    "• **Business Intelligence** - Analytics and reporting\n\n"
    "Would you like to know more about any specific service or connect with our sales team?"
)

PROMPT_FOR_QUESTION_REPLY = (
    "I'm here to help answer your questions about company policies and procedures. "
    "What would you like to know?"
)

HUMAN_REQUEST_REPLY = (
    "Sure! I'll connect you with one of our support representatives right away. "
    "They'll be able to provide personalized assistance."
)

NO_KNOWLEDGE_REPLY = (
    "I don't have specific information about that in my knowledge base. Would you like me to "
    "connect you with one of our support representatives who can provide more detailed assistance?"
)

ERROR_REPLY = (
    "I'm having trouble processing your request right now. "
    "Would you like to connect with human support?"
)

HANDOFF_DECLINED_REPLY = "No problem! I'm here to help. What else can I assist you with?"

CANNED_AGENT_RESPONSES = [
    "Thank you for contacting us! How can I assist you today?",
    "I understand your concern. Let me look into this for you right away.",
    "Is there anything else I can help you with?",
    "Let me transfer you to a specialist who can better assist you.",
    "Thank you for your patience. I have the information you need.",
    "I apologize for any inconvenience. Let me resolve this for you.",
    "Your issue has been resolved. Is there anything else you need help with?",
]

SATISFACTION_OPTIONS = [
    {"value": 5, "label": "\U0001F60A Excellent"},
    {"value": 4, "label": "\U0001F642 Good"},
    {"value": 3, "label": "\U0001F610 Okay"},
    {"value": 2, "label": "\U0001F615 Poor"},
    {"value": 1, "label": "\U0001F61E Very Poor"},
]
