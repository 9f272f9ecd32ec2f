class UnresolvedReferenceError(KeyError):
    """
    Raised when a class identifier is looked up that was never registered.

    This is a contract violation of the fixture being built, for instance a
    subclass defined against a superclass id that does not exist. It is not
    meant to be caught.
    """


class UnrecognizedValueKindError(TypeError):
    """
    Raised when a value outside the closed set of ValueHolder kinds reaches
    the type mapping table or the field value encoder.
    """
