import jinja2


class Loader:
    """
    Class for rendering text templates from this package.
    """
    def __init__(self, **globals):
        # Create the package loader for the parent module of this one
        loader = jinja2.PackageLoader(self.__module__.rsplit(".", maxsplit = 1)[0])
        self.env = jinja2.Environment(
            loader = loader,
            autoescape = False,
            keep_trailing_newline = True,
            trim_blocks = True,
            lstrip_blocks = True,
            undefined = jinja2.StrictUndefined
        )
        self.env.globals.update(globals)
        # Values in the NATS configuration format are quoted like JSON strings
        self.env.filters["quote"] = lambda value: '"{}"'.format(
            str(value).replace("\\", "\\\\").replace('"', '\\"')
        )

    def render(self, template, **params):
        """
        Render the specified template with the given params and return the text.
        """
        return self.env.get_template(template).render(**params)


default_loader = Loader()
