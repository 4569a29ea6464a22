# AI package
#
# Directive composition, tool discovery, provider clients and the
# conversation loop used by AI-type steps. Submodules are imported directly
# (flowmachine.ai.step, flowmachine.ai.tools, ...) to keep handler imports
# free of cycles.
