import sys
from dotenv import load_dotenv

load_dotenv(override=True)

from gateway.config import load_config
from gateway.core import run_gateway
from gateway.rules import InvalidRuleError

def main():
    config = load_config()
    try:
        run_gateway(config)
    except InvalidRuleError as e:
        # never start with a rule set we could only partially parse
        sys.exit(f"▸ Refusing to start: {e}")

if __name__ == "__main__":
    main()
