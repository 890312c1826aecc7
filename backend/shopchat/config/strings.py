# /shopchat/config/strings.py

# This file contains all user-facing strings, making them easy to manage,
# update, and eventually localize without changing application logic.

# Generic fallbacks
GENERIC_APOLOGY = "Sorry, I'm having trouble accessing the store information right now. Please try again later."
NO_REPLY_FALLBACK = "Sorry, I couldn't generate a response."
ITERATION_LIMIT_FALLBACK = (
    "I'm still working through that request. Could you tell me a bit more about what you'd like to do next?"
)

# Customer account authorization
AUTH_REQUIRED_MESSAGE = (
    "You need to authorize the app to access your customer data. "
    "Please click this link to authorize: {url}"
)
AUTH_CONFIG_ERROR = (
    "Customer account URL not available. Please ensure the shop is properly configured for customer authentication."
)
AUTH_FAILED_TO_START = "Failed to initiate authentication: {error}"
AUTH_SUCCESS_WHATSAPP = (
    "✅ Authorization successful! I can now help you with your order information. "
    "Let me pick up where we left off."
)
AUTH_FAILURE_WHATSAPP = "❌ Authorization failed. Please try again or contact support if the issue persists."

# Local tools
HANDOFF_ACKNOWLEDGEMENT = "I've let our team know. A member of staff will get back to you here shortly."
ORDER_FORM_CAPTION = "Here is our order form. Fill it in and send it back whenever you're ready."
ORDER_FORM_UNAVAILABLE = "The order form isn't available right now."
