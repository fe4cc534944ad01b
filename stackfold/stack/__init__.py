from stackfold.stack.manager import StackManager

__all__ = ["StackManager"]
